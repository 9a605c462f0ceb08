"""
Module that includes functions for dealing with IPS binary patches.

Details of the IPS format:
- https://zerosoft.zophar.net/ips.php
- http://justsolve.archiveteam.org/wiki/IPS_(binary_patch_format)

A patch starts with the `PATCH` signature, and is followed by a sequence of records that ends with
the `EOF` marker. Each record starts with a 24-bit offset and a 16-bit size. A non-zero size
introduces a literal record (the data follows); a zero size introduces a run-length record (a 16-bit
length and the fill byte follow). All integers are big-endian.
"""
import enum
import logging
import os
import shutil
import struct
import tempfile
from dataclasses import dataclass
from typing import Iterator, Union

log = logging.getLogger(__name__)

SIGNATURE = b'PATCH'
TERMINATOR = b'EOF'

__RECORD_HEADER_SIZE = 5
__RUN_LENGTH_HEADER_SIZE = 3


class PatchError(Exception):
    exit_code = 1


class InvalidSignatureError(PatchError):
    exit_code = 5


class TruncatedPatchError(PatchError):
    exit_code = 6


class OutOfRangeError(PatchError):
    exit_code = 7


class GapPolicy(enum.Enum):
    """
    Determines how a record whose offset lies past the current end of the target buffer is applied.

    - `PAD`: the buffer is zero-filled up to the offset, and the record is written at the offset.
    - `APPEND`: the record is appended at the current end of the buffer, regardless of its offset.
      This reproduces the output of the legacy tool byte for byte.
    - `ERROR`: an `OutOfRangeError` is raised.

    A record whose offset is exactly the length of the buffer is appended under all policies.
    Under `PAD`, a record that writes no bytes leaves the buffer untouched, and no gap is filled.
    """
    PAD = 'pad'
    APPEND = 'append'
    ERROR = 'error'


@dataclass(frozen=True)
class LiteralRecord:
    offset: int
    data: bytes
    patch_offset: int = 0

    @property
    def length(self) -> int:
        return len(self.data)

    def payload(self) -> bytes:
        return self.data


@dataclass(frozen=True)
class RunLengthRecord:
    offset: int
    length: int
    value: int
    patch_offset: int = 0

    def payload(self) -> bytes:
        return bytes((self.value, )) * self.length


Record = Union[LiteralRecord, RunLengthRecord]


def __read(patch_data: bytes, position: int, size: int, what: str) -> bytes:
    if position + size > len(patch_data):
        available = max(0, len(patch_data) - position)
        raise TruncatedPatchError(f'Unexpected end of patch while reading {what} at '
                                  f'0x{position:06X} ({size} bytes expected, {available} '
                                  'available).')
    return patch_data[position:position + size]


def read_records(patch_data: bytes) -> Iterator[Record]:
    """
    Decodes the records in the given patch, in file order.

    The signature is verified before the first record is yielded. Decoding stops as soon as the
    terminator is found at the start of a record; any bytes that follow the terminator are ignored.
    """
    if patch_data[:len(SIGNATURE)] != SIGNATURE:
        raise InvalidSignatureError(f'Invalid signature (expected {SIGNATURE!r}, found '
                                    f'{bytes(patch_data[:len(SIGNATURE)])!r}).')

    position = len(SIGNATURE)

    while True:
        if __read(patch_data, position, len(TERMINATOR), 'record') == TERMINATOR:
            break

        header = __read(patch_data, position, __RECORD_HEADER_SIZE, 'record header')
        offset_hi, offset_lo, size = struct.unpack('>BHH', header)
        offset = (offset_hi << 16) | offset_lo

        if size > 0:
            # Literal record.
            data = __read(patch_data, position + __RECORD_HEADER_SIZE, size, 'record data')
            yield LiteralRecord(offset, bytes(data), position)
            position += __RECORD_HEADER_SIZE + size
        else:
            # Run-length record.
            length, value = struct.unpack(
                '>HB',
                __read(patch_data, position + __RECORD_HEADER_SIZE, __RUN_LENGTH_HEADER_SIZE,
                       'run-length record'))
            if length < 3:
                log.warning(f'Run-length record at 0x{position:06X} fills only {length} byte(s); '
                            'the patch may be corrupt.')
            yield RunLengthRecord(offset, length, value, position)
            position += __RECORD_HEADER_SIZE + __RUN_LENGTH_HEADER_SIZE


def apply_record(buffer: bytearray, record: Record, gap_policy: GapPolicy = GapPolicy.PAD):
    if isinstance(record, LiteralRecord):
        kind = 'literal'
    elif isinstance(record, RunLengthRecord):
        kind = 'run-length'
    else:
        raise TypeError(f'Unsupported record type: {type(record).__name__}')

    offset = record.offset
    length = record.length
    payload = record.payload()

    if offset < len(buffer):
        if offset + length > len(buffer):
            raise OutOfRangeError(
                f'The {kind} record at 0x{record.patch_offset:06X} writes {length} bytes at '
                f'0x{offset:06X}, past the end of the target buffer ({len(buffer)} bytes).')
        buffer[offset:offset + length] = payload
        return

    if offset > len(buffer):
        gap = offset - len(buffer)
        if gap_policy is GapPolicy.ERROR:
            raise OutOfRangeError(
                f'The {kind} record at 0x{record.patch_offset:06X} starts at 0x{offset:06X}, '
                f'{gap} bytes past the end of the target buffer ({len(buffer)} bytes).')
        if gap_policy is GapPolicy.PAD:
            if not length:
                return
            log.debug(f'Zero-filling {gap} bytes before offset 0x{offset:06X}.')
            buffer.extend(bytes(gap))
        else:
            log.warning(f'The {kind} record at 0x{record.patch_offset:06X} targets 0x{offset:06X}, '
                        f'but will be appended at 0x{len(buffer):06X}.')

    buffer.extend(payload)


def apply_patch(patch_data: bytes,
                source_data: bytes,
                gap_policy: GapPolicy = GapPolicy.PAD) -> tuple[bytes, int]:
    """
    Applies the patch to a copy of the source data.

    Returns the patched data, and the number of records that were applied. If the patch is invalid,
    a `PatchError` is raised, and no data is returned; the source data is never modified.
    """
    buffer = bytearray(source_data)
    record_count = 0

    for record in read_records(patch_data):
        kind = 'RLE' if isinstance(record, RunLengthRecord) else 'literal'
        log.debug(f'{record.patch_offset:10} {record.offset:10} {kind:7} {record.length:10}')
        apply_record(buffer, record, gap_policy)
        record_count += 1

    return bytes(buffer), record_count


def read_ips_file(filepath: str) -> list[Record]:
    with open(filepath, 'rb') as f:
        return list(read_records(f.read()))


def apply_ips_file(ips_filepath: str, filepath: str, gap_policy: GapPolicy = GapPolicy.PAD) -> int:
    """
    Patches the given file in place, and returns the number of records that were applied.

    The file is only replaced once the whole patch has been applied successfully.
    """
    with open(ips_filepath, 'rb') as f:
        patch_data = f.read()
    with open(filepath, 'rb') as f:
        source_data = f.read()

    data, record_count = apply_patch(patch_data, source_data, gap_policy)
    if record_count:
        write_file_atomically(filepath, data)

    return record_count


def write_file_atomically(filepath: str, data: bytes):
    dirpath = os.path.dirname(os.path.abspath(filepath))
    fd, tmp_filepath = tempfile.mkstemp(prefix='.oxyips', dir=dirpath)
    try:
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
        if os.path.exists(filepath):
            shutil.copymode(filepath, tmp_filepath)
        else:
            umask = os.umask(0)
            os.umask(umask)
            os.chmod(tmp_filepath, 0o666 & ~umask)
        os.replace(tmp_filepath, filepath)
    except BaseException:
        if os.path.exists(tmp_filepath):
            os.remove(tmp_filepath)
        raise
