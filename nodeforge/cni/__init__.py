"""CNI plugin components."""
