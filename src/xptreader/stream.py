"""
Fixed-size reads from a binary stream.

XPORT headers, namestrs, and observations are all read as exact byte
counts.  A read that returns fewer bytes than requested means the
stream ended; the caller decides whether that is the expected end of
the observations or a truncated file.
"""

# Standard Library
import io
import logging

__all__ = [
    'BlockReader',
    'EndOfStream',
    'BLOCK_SIZE',
]

LOG = logging.getLogger(__name__)

# All "records" are 80 bytes long, padded if necessary.
BLOCK_SIZE = 80


class EndOfStream(EOFError):
    """
    The stream ended before the requested number of bytes were read.
    """

    def __init__(self, requested, partial=b''):
        self.requested = requested
        self.partial = partial
        super().__init__(f'Requested {requested} bytes, got {len(partial)}')


class BlockReader:
    """
    Read exact byte counts from a bytes-mode file-like object.

    The cursor only moves forward.  Bytes returned by ``unread`` are
    served again before anything else is read from the stream.
    """

    def __init__(self, fp):
        self._fp = fp
        self._pending = b''
        self._offset = 0

    def __repr__(self):
        return f'<{type(self).__name__} offset={self._offset}>'

    @property
    def closed(self):
        return self._fp.closed

    def close(self):
        self._fp.close()

    def tell(self):
        """
        Number of bytes consumed since the reader was created.
        """
        return self._offset

    def read(self, n):
        """
        Read exactly ``n`` bytes, or raise ``EndOfStream``.
        """
        data = self.read_available(n)
        if len(data) != n:
            raise EndOfStream(n, data)
        return data

    def read_block(self, size=BLOCK_SIZE):
        """
        Read one record, 80 bytes by default.
        """
        return self.read(size)

    def read_available(self, n):
        """
        Read up to ``n`` bytes, fewer only if the stream ends.
        """
        chunks = []
        if self._pending:
            chunks.append(self._pending[:n])
            self._pending = self._pending[n:]
        size = sum(map(len, chunks))
        while size < n:
            try:
                chunk = self._fp.read(n - size)
            except UnicodeDecodeError:
                raise TypeError(f'Expected a stream in bytes-mode, got {type(self._fp).__name__}')
            if not chunk:
                break
            if isinstance(chunk, str):
                raise TypeError(f'Expected a stream in bytes-mode, got {type(self._fp).__name__}')
            chunks.append(chunk)
            size += len(chunk)
        data = b''.join(chunks)
        self._offset += len(data)
        return data

    def unread(self, data):
        """
        Push ``data`` back to be read again.
        """
        self._pending = data + self._pending
        self._offset -= len(data)

    def discard(self, n):
        """
        Skip ``n`` bytes without looking at them.
        """
        if n <= 0:
            return
        LOG.debug(f'Discarding {n} bytes at offset {self._offset}')
        skipped = min(n, len(self._pending))
        self._pending = self._pending[skipped:]
        self._offset += skipped
        remaining = n - skipped
        if not remaining:
            return
        if self._seekable():
            self._fp.seek(remaining, io.SEEK_CUR)
            self._offset += remaining
        else:
            self.read_available(remaining)

    def _seekable(self):
        try:
            return self._fp.seekable()
        except AttributeError:
            return False
