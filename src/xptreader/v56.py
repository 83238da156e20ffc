"""
Read the SAS XPORT/XPT file format from SAS Version 5 or 6.

The SAS V5 Transport File format, also called XPORT, or simply XPT,
stores a data library as a sequence of 80-byte header records, binary
variable descriptors (namestrs), and fixed-width observations.  This
module reads one member dataset sequentially, without loading the whole
file into memory.
"""

# All "records" are 80 bytes long, padded if necessary.
# Character data are ASCII-encoded.
# Integer data are IBM-style integer format.
# Floating point data are IBM-style double format.

# Standard Library
import contextlib
import logging
import re
import string
import struct
from collections.abc import Iterator, Mapping
from io import BytesIO
from types import MappingProxyType

# Community Packages
import pandas as pd

# Xptreader Modules
import xptreader
from xptreader import HeaderRecord, VariableType
from xptreader.stream import BLOCK_SIZE, BlockReader, EndOfStream

__all__ = [
    'Reader',
    'load',
    'loads',
    'ibm_to_ieee',
    '_encoding',
]

LOG = logging.getLogger(__name__)

# TODO: Make text encoding a ``Reader`` argument, not a global.
TEXT_DATA_ENCODING = 'ISO-8859-1'
TEXT_METADATA_ENCODING = 'ascii'


@contextlib.contextmanager
def _encoding(data=TEXT_DATA_ENCODING, metadata=TEXT_METADATA_ENCODING):
    """
    Temporarily change the module's text encoding.
    """
    global TEXT_DATA_ENCODING
    global TEXT_METADATA_ENCODING
    stash = {'data': TEXT_DATA_ENCODING, 'metadata': TEXT_METADATA_ENCODING}
    try:
        TEXT_DATA_ENCODING = data
        TEXT_METADATA_ENCODING = metadata
        yield
    finally:
        LOG.debug(f'Reverting text encoding to {stash}')
        TEXT_DATA_ENCODING = stash['data']
        TEXT_METADATA_ENCODING = stash['metadata']


SIGNATURES = MappingProxyType({
    HeaderRecord.LIBRARY: 'LIBRARY HEADER RECORD',
    HeaderRecord.MEMBER: 'MEMBER  HEADER RECORD',
    HeaderRecord.DESCRIPTOR: 'DSCRPTR HEADER RECORD',
    HeaderRecord.NAMESTR: 'NAMESTR HEADER RECORD',
    HeaderRecord.OBSERVATION: 'OBS     HEADER RECORD',
})

MISSING_HEADER_ERRORS = MappingProxyType({
    HeaderRecord.LIBRARY: xptreader.MissingLibraryHeader,
    HeaderRecord.MEMBER: xptreader.MissingMemberHeader,
    HeaderRecord.DESCRIPTOR: xptreader.MissingDescriptorHeader,
    HeaderRecord.NAMESTR: xptreader.MissingNamestrHeader,
    HeaderRecord.OBSERVATION: xptreader.MissingObservationHeader,
})

# Whitespace in the C locale.  ``str.strip`` would also remove
# ISO-8859-1 no-break spaces, which are data.
WHITESPACE = string.whitespace
PADDING = b' '

# Plain decimal notation, as written by SAS.  Rejects "nan" and "1_000".
DECIMAL = re.compile(r'[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?')


def text_decode(bytestring):
    """
    Decode a blank-padded metadata field, such as a name or label.
    """
    return bytestring.strip(b'\x00').decode(TEXT_METADATA_ENCODING).strip(WHITESPACE)


def character_decode(bytestring):
    """
    Decode character data from an observation.
    """
    text = bytestring.decode(TEXT_DATA_ENCODING)
    return text.rstrip(WHITESPACE + '\x00').lstrip(WHITESPACE)


def ibm_to_ieee(ibm: bytes) -> float:
    """
    Convert IBM-format floating point (bytes) to IEEE 754 64-bit (float).
    """
    # IBM mainframe:    sign * 0.mantissa * 16 ** (exponent - 64)
    # Python uses IEEE: sign * 1.mantissa * 2 ** (exponent - 1023)

    # Pad-out to 8 bytes if necessary.  SAS may truncate numerics to as
    # few as 2 bytes, dropping the least significant mantissa bytes.
    ibm = bytes(ibm).ljust(8, b'\x00')

    # parse the 64 bits of IBM float as one 8-byte unsigned long long
    ulong, = struct.unpack('>Q', ibm)

    # IBM: 1-bit sign, 7-bits exponent, 56-bits mantissa
    sign = ulong & 0x8000000000000000
    exponent = (ulong & 0x7f00000000000000) >> 56
    mantissa = ulong & 0x00ffffffffffffff

    if mantissa == 0:
        # SAS encodes missing values as alternative zeros, with the
        # first byte an ASCII period, underscore, or letter.
        if ibm[:1] in (b'.', b'_') or ibm[:1].isupper():
            return float('nan')
        return -0.0 if sign else 0.0

    # IBM-format exponent is base 16, so the mantissa can have up to 3
    # leading zero-bits in the binary mantissa. IEEE format exponent
    # is base 2, so we don't need any leading zero-bits and will shift
    # accordingly. This is one of the criticisms of IBM-format, its
    # wobbling precision.
    if ulong & 0x0080000000000000:
        shift = 3
    elif ulong & 0x0040000000000000:
        shift = 2
    elif ulong & 0x0020000000000000:
        shift = 1
    else:
        shift = 0
    mantissa >>= shift

    # clear the 1 bit to the left of the binary point
    # this is implicit in IEEE specification
    mantissa &= 0xffefffffffffffff

    # IBM exponent is excess 64, but we subtract 65, because of the
    # implicit 1 left of the radix point for the IEEE mantissa
    exponent -= 65
    # IBM exponent is base 16, IEEE is base 2, so we multiply by 4
    exponent <<= 2
    # IEEE exponent is excess 1023, but we also increment for each
    # right-shift when aligning the mantissa's first 1-bit
    exponent += shift + 1023

    # IEEE: 1-bit sign, 11-bits exponent, 52-bits mantissa
    # We didn't shift the sign bit, so it's already in the right spot
    ieee = sign | (exponent << 52) | mantissa
    return struct.unpack('>d', struct.pack('>Q', ieee))[0]


class Header:
    """
    Generic header record, recognized by its signature.
    """

    # HEADER RECORD*******LIBRARY HEADER RECORD!!!!!!!000000000000000000000000000000
    #
    #    char hdrrec[13];       /* "HEADER RECORD"                    */
    #    char stars[7];         /* "*******"                          */
    #    char namedesc[21];     /* signature, e.g. "OBS     HEADER RECORD" */
    #    char bangs[7];         /* "!!!!!!!"                          */
    #    char num[6][5];        /* blank-padded ASCII decimals        */
    #    char blanks[2];
    #
    # The MEMBER header's last number is the size of each namestr and
    # the NAMESTR header's second number is the count of variables.

    fmt = '>13s7s21s7s5s5s5s5s5s5s2s'

    def __init__(self, signature, numbers=()):
        self.signature = signature
        self.numbers = tuple(numbers)

    def __repr__(self):
        return f'<{type(self).__name__} {self.signature!r}>'

    @classmethod
    def from_bytes(cls, bytestring: bytes):
        """
        Construct a ``Header`` from an 80-byte record.
        """
        tokens = struct.unpack(cls.fmt, bytestring)
        signature = tokens[2].decode(TEXT_METADATA_ENCODING, errors='replace').rstrip()
        return cls(signature=signature, numbers=tokens[4:10])

    def number(self, i, topic):
        """
        Parse the ``i``-th numeric field.
        """
        text = self.numbers[i].decode(TEXT_METADATA_ENCODING, errors='replace')
        try:
            return int(text)
        except ValueError:
            raise xptreader.StructureError(f'Invalid {topic} {text!r} in {self.signature!r}')

    @property
    def descriptor_size(self):
        """Size of each namestr record, from a MEMBER header."""  # noqa: D401
        return self.number(5, 'namestr size')

    @property
    def variable_count(self):
        """Number of namestrs, from a NAMESTR header."""  # noqa: D401
        return self.number(1, 'variable count')


def read_header(blocks, record):
    """
    Read a header record and check its signature.

    Raise the ``MissingHeader`` subclass for ``record`` if the signature
    is not the one expected.
    """
    try:
        block = blocks.read_block()
    except EndOfStream as exc:
        raise xptreader.TruncatedFile(f'File ended before the {record.name} header record') from exc
    header = Header.from_bytes(block)
    if header.signature != SIGNATURES[record]:
        raise MISSING_HEADER_ERRORS[record](header.signature)
    LOG.debug(f'Read {record.name} header record')
    return header


def read_records(blocks, n, topic):
    """
    Read and discard ``n`` 80-byte metadata records.
    """
    for i in range(n):
        try:
            blocks.read_block()
        except EndOfStream as exc:
            raise xptreader.TruncatedFile(f'File ended in the {topic}') from exc


def format_spec(name, length, decimals):
    """
    Display a SAS format or informat, such as ``COMMA8.`` or ``8.1``.
    """
    name = text_decode(name)
    if not (name or length or decimals):
        return ''
    return f'{name}{length or ""}.{decimals or ""}'


class Namestr:
    """
    Variable metadata from a SAS Version 5 or 6 Transport (XPORT) file.
    """

    # Here is the C structure definition for the namestr record:
    #
    # struct NAMESTR {
    #    short ntype;       /* VARIABLE TYPE: 1=NUMERIC, 2=CHAR       */
    #    short nhfun;       /* HASH OF NNAME (always 0)               */
    #    short nlng;        /* LENGTH OF VARIABLE IN OBSERVATION      */
    #    short nvar0;       /* VARNUM                                 */
    #    char8 nname;       /* NAME OF VARIABLE                       */
    #    char40 nlabel;     /* LABEL OF VARIABLE                      */
    #    char8 nform;       /* NAME OF FORMAT                         */
    #    short nfl;         /* FORMAT FIELD LENGTH OR 0               */
    #    short nfd;         /* FORMAT NUMBER OF DECIMALS              */
    #    short nfj;         /* 0=LEFT JUSTIFICATION, 1=RIGHT JUST     */
    #    char nfill[2];     /* (UNUSED, FOR ALIGNMENT AND FUTURE)     */
    #    char8 niform;      /* NAME OF INPUT FORMAT                   */
    #    short nifl;        /* INFORMAT LENGTH ATTRIBUTE              */
    #    short nifd;        /* INFORMAT NUMBER OF DECIMALS            */
    #    long npos;         /* POSITION OF VALUE IN OBSERVATION       */
    #    char rest[52];     /* remaining fields are irrelevant        */
    #    };
    #
    # The size of the structure listed above is 140 bytes.  Under
    # VAX/VMS, the size will be 136 bytes, meaning that the 'rest'
    # variable may be truncated.  We read it in two parts, the first 80
    # bytes up to the informat name, then the remainder.

    fmt = '>hhhh8s40s8shhh2s8s'
    continuation_fmts = {
        140: '>hhl52s',
        136: '>hhl48s',
    }

    @classmethod
    def from_bytes(cls, bytestring: bytes) -> xptreader.Variable:
        """
        Construct a ``Variable`` from an XPORT-format namestr.
        """
        size = struct.calcsize(cls.fmt)
        return cls.from_parts(bytestring[:size], bytestring[size:])

    @classmethod
    def from_parts(cls, primary, continuation):
        """
        Construct a ``Variable`` from the two parts of a namestr.
        """
        tokens = struct.unpack(cls.fmt, primary)
        rest = struct.unpack(cls.continuation_fmts[len(primary) + len(continuation)], continuation)
        try:
            name = text_decode(tokens[4])
            label = text_decode(tokens[5])
            format = format_spec(*tokens[6:9])
            informat = format_spec(tokens[11], *rest[:2])
        except UnicodeDecodeError as exc:
            raise xptreader.StructureError(f'Namestr {tokens[3]} has non-{exc.encoding} text') from exc
        try:
            vtype = VariableType(tokens[0])
        except ValueError:
            raise xptreader.UnknownVariableType(f'Variable {name!r} has type code {tokens[0]}')
        variable = xptreader.Variable(
            name=name,
            label=label,
            vtype=vtype,
            length=tokens[2],
            number=tokens[3],
            position=rest[2],
            format=format,
            informat=informat,
        )
        LOG.debug(f'Decoded namestr {variable!r}')
        return variable

    @classmethod
    def read(cls, blocks, size=140):
        """
        Read one namestr from a ``BlockReader``.
        """
        primary = blocks.read(struct.calcsize(cls.fmt))
        continuation = blocks.read(size - len(primary))
        return cls.from_parts(primary, continuation)


class VariableTable(Mapping):
    """
    Variables of a member dataset, in the order they were declared.

    The table is a read-only mapping of variable names to
    ``xptreader.Variable``.
    """

    def __init__(self, variables=(), descriptor_size=140):
        """
        Initialize and validate a ``VariableTable``.
        """
        self._order = tuple(variables)
        self._variables = {v.name: v for v in self._order}
        self._record_length = sum(v.length for v in self._order)
        self._descriptor_size = descriptor_size
        if len(self._variables) != len(self._order):
            names = [v.name for v in self._order]
            duplicates = sorted({n for n in names if names.count(n) > 1})
            raise xptreader.StructureError(f'Duplicate variable names {duplicates}')
        for v in self._order:
            if v.length < 1:
                raise xptreader.StructureError(f'Variable {v.name!r} has length {v.length}')
            if v.numeric and not 2 <= v.length <= 8:
                msg = f'Numeric {v.name!r} must be 2 to 8 bytes long, not {v.length}'
                raise xptreader.StructureError(msg)
            if v.position < 0 or v.position + v.length > self._record_length:
                msg = f'Variable {v.name!r} at {v.position} overruns {self._record_length}-byte observations'
                raise xptreader.StructureError(msg)

    def __repr__(self):
        """
        REPL-format string.
        """
        return f'<{type(self).__name__} {list(self)} record_length={self.record_length}>'

    def __getitem__(self, name):
        """
        Get a variable by name.
        """
        return self._variables[name]

    def __iter__(self):
        """
        Get an iterator of variable names.
        """
        return iter(self._variables)

    def __len__(self):
        """
        Get the number of variables.
        """
        return len(self._order)

    @property
    def variables(self):
        """
        Variables in declaration order.
        """
        return self._order

    @property
    def record_length(self):
        """
        Number of bytes in each observation.
        """
        return self._record_length

    @property
    def descriptor_size(self):
        return self._descriptor_size

    @classmethod
    def from_stream(cls, blocks, count, descriptor_size=140):
        """
        Read ``count`` namestrs, then skip padding to the next record.
        """
        # Each namestr field is 140 bytes long, but the fields are
        # streamed together and broken in 80-byte pieces. If the last
        # byte of the last namestr field does not fall in the last byte
        # of the 80-byte record, the record is padded with ASCII blanks
        # to 80 bytes.
        if descriptor_size not in Namestr.continuation_fmts:
            raise xptreader.StructureError(f'Namestr size must be 140 or 136, not {descriptor_size}')
        if descriptor_size == 136:
            LOG.warning('File written on VAX/VMS, module behavior not tested')
        variables = []
        for i in range(count):
            try:
                variables.append(Namestr.read(blocks, descriptor_size))
            except EndOfStream as exc:
                raise xptreader.TruncatedFile(f'File ended in namestr {i + 1} of {count}') from exc
        blocks.discard(-(count * descriptor_size) % BLOCK_SIZE)
        self = cls(variables, descriptor_size=descriptor_size)
        LOG.debug(f'Decoded {self!r}')
        return self

    @property
    def contents(self):
        """
        Variable metadata, such as label, format, number, and position.
        """
        df = pd.DataFrame(
            [{
                'Variable': v.name,
                'Type': v.vtype.name.title(),
                'Length': v.length,
                'Format': v.format,
                'Informat': v.informat,
                'Label': v.label,
                'Position': v.position,
            } for v in self.variables],
            columns=['Variable', 'Type', 'Length', 'Format', 'Informat', 'Label', 'Position'],
        )
        df.index = df.index + 1
        df.index.name = '#'
        return df


# Caller-requested slot types for ``Observations.read_row_into``.
SLOT_TYPES = MappingProxyType({
    float: VariableType.NUMERIC,
    str: VariableType.CHARACTER,
    VariableType.NUMERIC: VariableType.NUMERIC,
    VariableType.CHARACTER: VariableType.CHARACTER,
})


class Observations(Iterator):
    """
    Data from a SAS Version 5 or 6 Transport (XPORT) file.

    ``Observations`` is an iterator, yielding observations as tuples.
    """

    # 9. Data records
    #    Data records are streamed in the same way that namestrs are.
    #    There is ASCII blank padding at the end of the last record if
    #    necessary. There is no special trailing record.

    def __init__(self, blocks, table):
        """
        Initialize from a ``BlockReader`` positioned after the OBS header.
        """
        self.blocks = blocks
        self.table = table
        self.count = 0
        self._start = blocks.tell()
        self._done = False
        self.converters = []
        for variable in table.variables:
            if variable.numeric:
                self.converters.append(self._converter(variable, ibm_to_ieee))
            else:
                self.converters.append(self._converter(variable, character_decode))

    @staticmethod
    def _converter(variable, decode):
        start, stop = variable.position, variable.position + variable.length

        def converter(chunk):
            return decode(chunk[start:stop])

        return converter

    def __next__(self):
        """
        Get the next observation.
        """
        row = self.read_row()
        if row is None:
            raise StopIteration
        return row

    def read_row(self):
        """
        Decode the next observation, or return ``None`` after the last.
        """
        chunk = self._read()
        if chunk is None:
            return None
        return tuple(f(chunk) for f in self.converters)

    def read_row_into(self, types):
        """
        Decode the first ``len(types)`` values of the next observation.

        Each slot of ``types`` is ``float`` or ``str``.  Character values
        are parsed as numbers for ``float`` slots and numbers are
        formatted as text for ``str`` slots.  Return ``None`` after the
        last observation.
        """
        slots = []
        for t in types:
            try:
                slots.append(SLOT_TYPES[t])
            except (KeyError, TypeError):
                raise TypeError(f'Expected float or str, got {t!r}')
        if len(slots) > len(self.table):
            raise TypeError(f'Requested {len(slots)} values from {len(self.table)} variables')

        chunk = self._read()
        if chunk is None:
            return None
        values = []
        for variable, f, slot in zip(self.table.variables, self.converters, slots):
            value = f(chunk)
            if slot == variable.vtype:
                values.append(value)
            elif slot == VariableType.NUMERIC:
                if not DECIMAL.fullmatch(value):
                    msg = f'Variable {variable.name!r} value {value!r} is not a number'
                    raise xptreader.CoercionError(msg)
                values.append(float(value))
            else:
                values.append(str(value))
        return values

    def _read(self):
        """
        Read the bytes of one observation, or ``None`` at the end of data.
        """
        if self._done:
            return None
        stride = self.table.record_length
        if stride == 0:
            self._finish()
            return None
        offset = self.blocks.tell() - self._start
        try:
            chunk = self.blocks.read(stride)
        except EndOfStream as exc:
            if exc.partial.strip(b' \x00'):
                LOG.warning(
                    f'Ignored incomplete observation of {len(exc.partial)} bytes'
                    f' after {self.count} observations'
                )
            self._finish(len(exc.partial))
            return None
        if chunk == PADDING * stride and self._at_padding(offset, chunk):
            return None
        self.count += 1
        return chunk

    def _at_padding(self, offset, chunk):
        """
        Check if a blank observation is the padding of the last record.
        """
        # An all-blank character row is indistinguishable from padding.
        # It counts as padding only when it starts mid-record and the
        # rest of the stream is blank.
        remainder = offset % BLOCK_SIZE
        if not remainder:
            return False
        rest = self.blocks.read_available(BLOCK_SIZE)
        if remainder + len(chunk) + len(rest) <= BLOCK_SIZE and not rest.strip(PADDING):
            self._finish(len(chunk) + len(rest))
            return True
        self.blocks.unread(rest)
        return False

    def _finish(self, padding=0):
        self._done = True
        if padding:
            LOG.debug(f'Ignored {padding} bytes of end-of-file padding')
        LOG.info(f'Read {self.count} observations')


class Reader(Iterator):
    """
    Read observations from a SAS Transport (XPORT) file.

    Deserialize ``fp`` (a ``.read()``-supporting file-like object in
    bytes-mode) one observation at a time.  Call ``read_headers`` once
    before reading any observations.

        with open('example.xpt', 'rb') as f:
            reader = Reader(f)
            reader.read_headers()
            for row in reader:
                process(row)
    """

    def __init__(self, fp):
        self._blocks = BlockReader(fp)
        self._table = None
        self._observations = None

    @classmethod
    def open(cls, path):
        """
        Open the file at ``path`` for reading.
        """
        fp = open(path, 'rb')
        LOG.debug(f'Opened {path}')
        return cls(fp)

    def __repr__(self):
        """
        REPL-format string.
        """
        return f'<{type(self).__name__} variables={self.fields}>'

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def close(self):
        """
        Release the underlying stream.
        """
        self._blocks.close()

    def read_headers(self):
        """
        Read the library and member headers and the variable namestrs.

        Raise a ``MissingHeader`` subclass naming the first header record
        that was not found.
        """
        if self._table is not None:
            raise xptreader.XportError('Headers were already read')
        blocks = self._blocks

        try:
            read_header(blocks, HeaderRecord.LIBRARY)
        except xptreader.MissingLibraryHeader as exc:
            if 'COMPRESS' in exc.found:
                LOG.error('File is CPORT format, not XPORT')
            elif exc.found.startswith('LIBV8'):
                LOG.error('File is SAS Version 8 or 9 Transport format, not Version 5 or 6')
            raise
        # The first real header record names the SAS version and OS,
        # and the second is the datetime modified.  We don't use them.
        read_records(blocks, 2, 'library header')

        header = read_header(blocks, HeaderRecord.MEMBER)
        descriptor_size = header.descriptor_size
        read_header(blocks, HeaderRecord.DESCRIPTOR)
        # Dataset name, label, type, and timestamps.
        read_records(blocks, 2, 'member header')

        header = read_header(blocks, HeaderRecord.NAMESTR)
        table = VariableTable.from_stream(blocks, header.variable_count, descriptor_size)
        read_header(blocks, HeaderRecord.OBSERVATION)

        self._table = table
        self._observations = Observations(blocks, table)
        LOG.info(f'Read headers for {len(table)} variables, {table.record_length} bytes per observation')

    @property
    def observations(self):
        if self._observations is None:
            raise xptreader.XportError('Call read_headers before reading observations')
        return self._observations

    @property
    def table(self):
        """
        The ``VariableTable`` decoded from the namestrs.
        """
        return self.observations.table

    @property
    def variables(self):
        """
        Variables in the order they appear in each observation.
        """
        return self.table.variables

    @property
    def fields(self):
        return tuple(self.table) if self._table is not None else ()

    @property
    def record_length(self):
        return self.table.record_length

    def read_row(self):
        """
        Read the next observation as a tuple, or ``None`` after the last.
        """
        return self.observations.read_row()

    def read_row_into(self, types):
        """
        Read values of the requested types from the next observation.

            reader.read_row_into([str, float])

        Return ``None`` after the last observation.
        """
        return self.observations.read_row_into(types)

    def __next__(self):
        return next(self.observations)


def load(fp):
    """
    Deserialize a SAS dataset from a SAS Transport v5 (XPT) file.

        >>> with open('test/data/example.xpt', 'rb') as f:
        ...     df = load(f)
    """
    reader = Reader(fp)
    reader.read_headers()
    columns = list(reader.fields)
    df = pd.DataFrame.from_records(list(reader), columns=columns)
    numeric = {v.name: 'float64' for v in reader.variables if v.numeric}
    df = df.astype(numeric)
    df.attrs['labels'] = {v.name: v.label for v in reader.variables}
    LOG.info(f'Decoded XPORT dataset with {len(df)} observations')
    return df


def loads(bytestring):
    """
    Deserialize a SAS dataset from an XPORT-format string.

        >>> with open('test/data/example.xpt', 'rb') as f:
        ...     bytestring = f.read()
        >>> df = loads(bytestring)
    """
    return load(BytesIO(bytestring))
