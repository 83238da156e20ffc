"""
Read SAS XPORT/XPT-format files, one observation at a time.
"""

# Standard Library
import enum
import logging
from collections import namedtuple

from .__about__ import __version__  # noqa: F401 module imported but unused

LOG = logging.getLogger(__name__)

__all__ = [
    'open',
    'HeaderRecord',
    'Variable',
    'VariableType',
    'XportError',
    'StructureError',
    'MissingHeader',
    'MissingLibraryHeader',
    'MissingMemberHeader',
    'MissingDescriptorHeader',
    'MissingNamestrHeader',
    'MissingObservationHeader',
    'UnknownVariableType',
    'TruncatedFile',
    'CoercionError',
]


class XportError(Exception):
    """
    Base class for errors reading an XPORT file.
    """


class StructureError(XportError, ValueError):
    """
    Bytes did not match the expected XPORT structure.
    """


class HeaderRecord(enum.IntEnum):
    """
    Header records of a data library, in the order they appear.
    """
    LIBRARY = 1
    MEMBER = 2
    DESCRIPTOR = 3
    NAMESTR = 4
    OBSERVATION = 5


class MissingHeader(StructureError):
    """
    A header record was not where the format requires it.
    """

    record = None

    def __init__(self, found=''):
        self.found = found
        super().__init__(f'Expected {self.record.name} header record, found {found!r}')


class MissingLibraryHeader(MissingHeader):
    record = HeaderRecord.LIBRARY


class MissingMemberHeader(MissingHeader):
    record = HeaderRecord.MEMBER


class MissingDescriptorHeader(MissingHeader):
    record = HeaderRecord.DESCRIPTOR


class MissingNamestrHeader(MissingHeader):
    record = HeaderRecord.NAMESTR


class MissingObservationHeader(MissingHeader):
    record = HeaderRecord.OBSERVATION


class UnknownVariableType(StructureError):
    """
    Namestr type code was neither numeric (1) nor character (2).
    """


class TruncatedFile(StructureError):
    """
    The file ended in the middle of a header record or namestr.
    """


class CoercionError(XportError, ValueError):
    """
    Character data could not be converted to the requested type.
    """


class VariableType(enum.IntEnum):
    """
    SAS variables can be either Numeric or Character type.
    """
    NUMERIC = 1
    CHARACTER = 2


class Variable(namedtuple('Variable', 'name label vtype length number position format informat')):
    """
    SAS variable metadata, decoded from a namestr record.

    ``position`` is the 0-based byte offset of the variable's value in
    an observation and ``number`` is the 1-based variable number as
    written in the file.
    """

    __slots__ = ()

    def __new__(cls, name, label, vtype, length, number, position, format='', informat=''):
        return super().__new__(
            cls, name, label, VariableType(vtype), length, number, position, format, informat
        )

    @property
    def numeric(self):
        return self.vtype == VariableType.NUMERIC

    def __str__(self):
        return f'{self.name} ({self.vtype.name.title()} {self.length})'


def open(path):  # noqa: A001 shadows builtin
    """
    Open an XPORT file for reading.

        with xptreader.open('example.xpt') as reader:
            reader.read_headers()
            for row in reader:
                process(row)

    Raises ``OSError`` if the file cannot be opened for binary reading.
    """
    # Avoid circular import problems.
    # Xptreader Modules
    from xptreader.v56 import Reader
    return Reader.open(path)
