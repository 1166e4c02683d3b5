"""File writing helpers."""

import logging
import os
import tempfile
from typing import Callable, TextIO, Union

logger = logging.getLogger("nodeforge.utils.fileutil")


def write_file_atomic(
    path: str,
    content: Union[str, bytes, Callable[[TextIO], None]],
    mode: int = 0o644,
    dry_run: bool = False,
) -> None:
    """Write a file by writing a temp file next to it and renaming it into place.

    Args:
        path: Destination path
        content: Text, bytes, or a callable that writes text into the open temp file
        mode: File permissions of the result
        dry_run: Only log what would be written

    Raises:
        OSError: If the file cannot be written
    """
    if dry_run:
        logger.debug(f"[dry-run] would write {path}")
        return
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    binary = isinstance(content, bytes)
    fd, tmp_path = tempfile.mkstemp(prefix=f".{os.path.basename(path)}.", dir=directory)
    try:
        with os.fdopen(fd, 'wb' if binary else 'w', **({} if binary else {'encoding': 'utf-8'})) as f:
            if callable(content):
                content(f)
            else:
                f.write(content)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
    logger.debug(f"Wrote {path}")
