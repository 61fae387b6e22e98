#!/usr/bin/env python3
"""
Scoped temporary storage for the message being filtered.

The message is read from stdin once and spooled to an unlinked temporary file,
so the external tools can read it straight from a file descriptor and the data
disappears when the buffer is closed, whatever way the pipeline ends.

Author: Post-Data Filter Project
License: GPL-3.0
"""

import logging
import shutil
import tempfile
from typing import BinaryIO, Optional

logger = logging.getLogger(__name__)

COPY_CHUNK_SIZE = 64 * 1024


class MessageBuffer:
    """Owns the raw message bytes for the lifetime of the pipeline."""

    def __init__(self, tmp_dir: Optional[str] = None):
        self.tmp_dir = tmp_dir
        self._file = None
        self.size = 0
        self.replaced = False

    def __enter__(self) -> 'MessageBuffer':
        # TemporaryFile is unlinked right after creation on POSIX,
        # nothing is left behind even if the process gets killed
        self._file = tempfile.TemporaryFile(prefix='postdata-', dir=self.tmp_dir)
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def close(self):
        if self._file is not None:
            self._file.close()
            self._file = None

    @property
    def closed(self) -> bool:
        return self._file is None

    def _require_open(self) -> BinaryIO:
        if self._file is None:
            raise ValueError("Message buffer is closed")
        return self._file

    def fill_from(self, stream: BinaryIO) -> int:
        """Copy the whole stream into the buffer, returns the number of bytes."""
        f = self._require_open()
        f.seek(0)
        f.truncate()
        shutil.copyfileobj(stream, f, COPY_CHUNK_SIZE)
        f.flush()
        self.size = f.tell()
        logger.debug(f"Buffered {self.size} bytes")
        return self.size

    def open_reader(self) -> BinaryIO:
        """
        Return the underlying file rewound to the start.

        Meant to be passed as stdin to a subprocess; callers must not write to it.
        """
        f = self._require_open()
        f.flush()
        f.seek(0)
        return f

    def read(self) -> bytes:
        """Return a copy of the full message bytes."""
        return self.open_reader().read()

    def replace(self, data: bytes):
        """Swap the message for a new variant (signed message)."""
        f = self._require_open()
        f.seek(0)
        f.truncate()
        f.write(data)
        f.flush()
        self.size = len(data)
        self.replaced = True
        logger.debug(f"Message replaced, now {self.size} bytes")
