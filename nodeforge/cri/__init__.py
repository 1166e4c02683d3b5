"""Container runtime components and the containerd registry trust store."""
