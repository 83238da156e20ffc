"""
Shared test fixtures.
"""

# Standard Library
import math
import struct
from io import BytesIO

# Community Packages
import pytest

# Xptreader Modules
import xptreader


def ibm(value, length=8):
    """
    Encode a float in IBM hexadecimal format, truncated to ``length``.
    """
    if value == 0:
        return b'\x00' * length
    sign = 0x80 if value < 0 else 0
    mantissa, exponent = math.frexp(abs(value))
    hexponent = -(-exponent // 4)
    fraction = int(mantissa * 2.0 ** (exponent - 4 * hexponent + 56))
    return (bytes([sign | (hexponent + 64)]) + fraction.to_bytes(7, 'big'))[:length]


def header(signature, count=0, size=0, flag=0):
    """
    Encode an 80-byte header record.
    """
    numbers = f'00000{count:05d}00000{flag:05d}00000{size:05d}'
    return f'HEADER RECORD*******{signature:21}!!!!!!!{numbers}  '.encode('ascii')


def namestr(vtype, length, number, name, label='', position=0, size=140, fmt=(b'', 0, 0)):
    """
    Encode a namestr record.
    """
    form, width, decimals = fmt
    primary = struct.pack(
        '>hhhh8s40s8shhh2s8s',
        vtype,
        0,
        length,
        number,
        name.encode('ascii').ljust(8),
        label.encode('ascii').ljust(40),
        form.ljust(8),
        width,
        decimals,
        0,
        b'',
        b' ' * 8,
    )
    rest = struct.pack('>hhl52s' if size == 140 else '>hhl48s', 0, 0, position, b'')
    return primary + rest


def pad(bytestring):
    """
    Blank-pad to a multiple of 80 bytes.
    """
    return bytestring + b' ' * (-len(bytestring) % 80)


def xpt(variables, rows=(), size=140, namestrs=None):
    """
    Encode a single-member XPORT file.

    ``variables`` is a sequence of ``(name, label, vtype, length)``.
    """
    encoded = []
    position = 0
    for number, (name, label, vtype, length) in enumerate(variables, 1):
        encoded.append(namestr(vtype, length, number, name, label, position, size))
        position += length
    if namestrs is None:
        namestrs = pad(b''.join(encoded))

    observations = b''
    for row in rows:
        for (name, label, vtype, length), value in zip(variables, row):
            if vtype == xptreader.VariableType.NUMERIC:
                observations += ibm(value, length)
            else:
                observations += value.encode('ISO-8859-1').ljust(length)

    return b''.join([
        header('LIBRARY HEADER RECORD'),
        b'SAS     SAS     SASLIB  9.4     X64_10PR'.ljust(64) + b'01JAN24:00:00:00',
        b'01JAN24:00:00:00'.ljust(80),
        header('MEMBER  HEADER RECORD', size=size, flag=160),
        header('DSCRPTR HEADER RECORD'),
        b'SAS     TEST    SASDATA 9.4     X64_10PR'.ljust(64) + b'01JAN24:00:00:00',
        b'01JAN24:00:00:00'.ljust(80),
        header('NAMESTR HEADER RECORD', count=len(variables)),
        namestrs,
        header('OBS     HEADER RECORD'),
        pad(observations),
    ])


class Unseekable:
    """
    Binary stream that can only be read forward, like a pipe.
    """

    def __init__(self, bytestring):
        self._fp = BytesIO(bytestring)

    @property
    def closed(self):
        return self._fp.closed

    def close(self):
        self._fp.close()

    def read(self, n=-1):
        return self._fp.read(n)

    def seekable(self):
        return False

    def tell(self):
        return self._fp.tell()


@pytest.fixture(scope='session')
def build():
    """
    Helpers for encoding XPORT fixtures.
    """

    class Build:
        pass

    Build.ibm = staticmethod(ibm)
    Build.header = staticmethod(header)
    Build.namestr = staticmethod(namestr)
    Build.pad = staticmethod(pad)
    Build.xpt = staticmethod(xpt)
    Build.Unseekable = Unseekable
    return Build


@pytest.fixture(scope='session')
def rows():
    """
    Observations of the example dataset.
    """
    return [
        ('ALIVE', 'POOR', 1216.0, 98.6),
        ('ALIVE', 'NOT', 1761.0, 95.4),
        ('ALIVE', 'UNK', 2517.0, 86.7),
        ('DEAD', 'POOR', 254.0, 93.4),
        ('DEAD', 'NOT', 60.0, 103.5),
        ('DEAD', 'UNK', 137.0, 56.7),
    ]


@pytest.fixture(scope='session')
def library_bytestring():
    """
    A 4-column, 6-row dataset in SAS V5 Transport format.
    """
    return b'''\
HEADER RECORD*******LIBRARY HEADER RECORD!!!!!!!000000000000000000000000000000  \
SAS     SAS     SASLIB  9.3     W32_7PRO                        13NOV15:10:35:08\
13NOV15:10:35:08                                                                \
HEADER RECORD*******MEMBER  HEADER RECORD!!!!!!!000000000000000001600000000140  \
HEADER RECORD*******DSCRPTR HEADER RECORD!!!!!!!000000000000000000000000000000  \
SAS     ECON    SASDATA 9.3     W32_7PRO                        13NOV15:10:35:08\
13NOV15:10:35:08                Blank-padded dataset label                      \
HEADER RECORD*******NAMESTR HEADER RECORD!!!!!!!000000000400000000000000000000  \
\x00\x02\x00\x00\x00\x08\x00\x01VIT_STATVital status                            \
$       \x00\x05\x00\x00\x00\x00\x00\x00        \x00\x00\x00\x00\x00\x00\x00\x00\
\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\
\x00\x02\x00\x00\x00\x08\x00\x02ECON    Economic status                         \
$CHAR   \x00\x04\x00\x00\x00\x01\x00\x00        \x00\x00\x00\x00\x00\x00\x00\x08\
\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\
\x00\x01\x00\x00\x00\x08\x00\x03COUNT   Count                                   \
COMMA   \x00\x08\x00\x00\x00\x00\x00\x00        \x00\x00\x00\x00\x00\x00\x00\x10\
\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\
\x00\x01\x00\x00\x00\x08\x00\x04TEMP    Temperature                             \
        \x00\x08\x00\x01\x00\x00\x00\x00        \x00\x00\x00\x00\x00\x00\x00\x18\
\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\
HEADER RECORD*******OBS     HEADER RECORD!!!!!!!000000000000000000000000000000  \
ALIVE   POOR    CL\x00\x00\x00\x00\x00\x00Bb\x99\x99\x99\x99\x99\x98\
ALIVE   NOT     Cn\x10\x00\x00\x00\x00\x00B_fffffh\
ALIVE   UNK     C\x9dP\x00\x00\x00\x00\x00BV\xb333334\
DEAD    POOR    B\xfe\x00\x00\x00\x00\x00\x00B]fffffh\
DEAD    NOT     B<\x00\x00\x00\x00\x00\x00Bg\x80\x00\x00\x00\x00\x00\
DEAD    UNK     B\x89\x00\x00\x00\x00\x00\x00B8\xb333334\
                                                \
'''


@pytest.fixture()
def library_file(library_bytestring, tmp_path):
    """
    The example dataset written to a file.
    """
    path = tmp_path / 'econ.xpt'
    path.write_bytes(library_bytestring)
    return path
