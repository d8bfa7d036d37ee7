"""Validation of an etcd data directory against corruption and snapshot revisions."""

from __future__ import annotations

import enum
import logging
import os
import shutil
import struct
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from etcdbr.snapshots import get_latest_full_snapshot_and_delta_snap_list

logger = logging.getLogger(__name__)

SNAP_SUFFIX = ".snap"
WAL_SUFFIX = ".wal"
VALID_FILES = frozenset({"db"})


class DataDirStatus(enum.IntEnum):
    """Status of the etcd data directory."""

    DATA_DIRECTORY_VALID = 0
    DATA_DIRECTORY_NOT_EXIST = 1
    DATA_DIRECTORY_INV_STRUCT = 2
    DATA_DIRECTORY_CORRUPT = 3
    DATA_DIRECTORY_ERROR = 4
    REVISION_CONSISTENCY_ERROR = 5


class Mode(str, enum.Enum):
    """How thoroughly the data directory is validated."""

    FULL = "full"
    SANITY = "sanity"


class ValidationError(Exception):
    """Base of the errors found while validating data files."""


class PathRequiredError(ValidationError):
    """The path to a database was not given."""

    def __init__(self) -> None:
        super().__init__("path required")


class DatabaseNotFoundError(ValidationError):
    """The database file does not exist."""

    def __init__(self) -> None:
        super().__init__("file not found")


class CorruptError(ValidationError):
    """A consistency check of the database found errors."""

    def __init__(self) -> None:
        super().__init__("invalid value")


class InvalidDatabaseError(ValidationError):
    """The database file cannot be opened."""


class SnapshotError(ValidationError):
    """A snapshot file is unusable."""


class NoSnapshotError(SnapshotError):
    def __init__(self) -> None:
        super().__init__("snap: no available snapshot")


class EmptySnapshotError(SnapshotError):
    def __init__(self) -> None:
        super().__init__("snap: empty snapshot")


class CRCMismatchError(SnapshotError):
    def __init__(self) -> None:
        super().__init__("snap: crc mismatch")


class DecodeError(ValidationError):
    """Malformed protobuf encoded data."""


class WALError(ValidationError):
    """The write-ahead log is unusable."""


class _UnexpectedEOF(WALError):
    def __init__(self, path: str, offset: int) -> None:
        super().__init__("unexpected EOF")
        self.path = path
        self.offset = offset


class RevisionConsistencyFailure(ValidationError):
    """The etcd revision cannot be checked against or is behind the snapshots."""


class ValidationFailed(Exception):
    """Validation could not be carried out; ``status`` tells why."""

    def __init__(self, status: DataDirStatus, message: str) -> None:
        super().__init__(message)
        self.status = status


@dataclass
class RaftSnapshot:
    """The contents of a raft snapshot file."""

    data: bytes
    index: int
    term: int


# --- checksums and protobuf -------------------------------------------------

def _make_crc_table() -> list[int]:
    table = []
    for byte in range(256):
        crc = byte
        for _ in range(8):
            crc = (crc >> 1) ^ 0x82F63B78 if crc & 1 else crc >> 1
        table.append(crc)
    return table


_CRC_TABLE = _make_crc_table()


def _crc32c(data: bytes, crc: int = 0) -> int:
    crc ^= 0xFFFFFFFF
    for byte in data:
        crc = _CRC_TABLE[(crc ^ byte) & 0xFF] ^ (crc >> 8)
    return crc ^ 0xFFFFFFFF


def _fnv64a(data: bytes) -> int:
    value = 0xCBF29CE484222325
    for byte in data:
        value = ((value ^ byte) * 0x100000001B3) & 0xFFFFFFFFFFFFFFFF
    return value


def _read_varint(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(data) or shift > 63:
            raise DecodeError("proto: unexpected end of varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7


def _proto_fields(data: bytes) -> Iterator[tuple[int, int, Any]]:
    pos = 0
    while pos < len(data):
        tag, pos = _read_varint(data, pos)
        field, wire = tag >> 3, tag & 7
        if wire == 0:
            value, pos = _read_varint(data, pos)
        elif wire == 1:
            if pos + 8 > len(data):
                raise DecodeError("proto: unexpected EOF")
            value = struct.unpack_from("<Q", data, pos)[0]
            pos += 8
        elif wire == 2:
            length, pos = _read_varint(data, pos)
            if pos + length > len(data):
                raise DecodeError("proto: unexpected EOF")
            value = bytes(data[pos:pos + length])
            pos += length
        elif wire == 5:
            if pos + 4 > len(data):
                raise DecodeError("proto: unexpected EOF")
            value = struct.unpack_from("<I", data, pos)[0]
            pos += 4
        else:
            raise DecodeError(f"proto: illegal wire type {wire}")
        yield field, wire, value


# --- filesystem helpers ------------------------------------------------------

def directory_exist(path: str) -> bool:
    """Return whether ``path`` exists; raise OSError for other stat failures."""
    try:
        os.stat(path)
    except FileNotFoundError:
        return False
    return True


def is_dir_empty(path: str) -> bool:
    """Return whether the directory at ``path`` has no entries."""
    with os.scandir(path) as entries:
        return next(entries, None) is None


def check_suffix(names: list[str]) -> list[str]:
    """Return the snapshot file names among ``names``, warning about unexpected files."""
    snaps = []
    for name in names:
        if name.endswith(SNAP_SUFFIX):
            snaps.append(name)
        elif name not in VALID_FILES:
            logger.warning("skipped unexpected non snapshot file %s", name)
    return snaps


def read_snapshot(path: str) -> RaftSnapshot:
    """Read and verify the snapshot file at ``path``."""
    logger.info("Verifying Snapfile %s.", path)
    with open(path, "rb") as handle:
        raw = handle.read()
    if not raw:
        raise EmptySnapshotError()

    crc = 0
    data = b""
    for field, wire, value in _proto_fields(raw):
        if field == 1 and wire == 0:
            crc = value & 0xFFFFFFFF
        elif field == 2 and wire == 2:
            data = value
    if not data or crc == 0:
        raise EmptySnapshotError()
    if _crc32c(data) != crc:
        raise CRCMismatchError()

    snap_data = b""
    index = term = 0
    for field, wire, value in _proto_fields(data):
        if field == 1 and wire == 2:
            snap_data = value
        elif field == 2 and wire == 2:
            for mfield, mwire, mvalue in _proto_fields(value):
                if mfield == 2 and mwire == 0:
                    index = mvalue
                elif mfield == 3 and mwire == 0:
                    term = mvalue
    return RaftSnapshot(data=snap_data, index=index, term=term)


# --- bolt database reading ---------------------------------------------------

_BOLT_MAGIC = 0xED0CDAED
_BOLT_VERSION = 2
_PAGE_HEADER = struct.Struct("<QHHI")
_META = struct.Struct("<IIIIQQQQQ")
_LEAF_ELEMENT = struct.Struct("<IIII")
_BRANCH_ELEMENT = struct.Struct("<IIQ")
_BRANCH_PAGE, _LEAF_PAGE, _META_PAGE, _FREELIST_PAGE = 0x01, 0x02, 0x04, 0x10
_BUCKET_LEAF_FLAG = 0x01


@dataclass
class _Meta:
    page_size: int
    root: int
    freelist: int
    high_water: int
    txid: int


class _BoltFile:
    """Read-only access to the pages of a bolt database file."""

    def __init__(self, path: str) -> None:
        with open(path, "rb") as handle:
            self.buf = handle.read()
        metas = [m for m in (self._read_meta(0), self._read_meta(4096)) if m is not None]
        if not metas:
            raise InvalidDatabaseError("invalid database")
        first = self._read_meta(0)
        if first is not None and first.page_size != 4096:
            second = self._read_meta(first.page_size)
            metas = [m for m in (first, second) if m is not None]
        self.meta = max(metas, key=lambda m: m.txid)
        self.page_size = self.meta.page_size

    def _read_meta(self, offset: int) -> _Meta | None:
        start = offset + _PAGE_HEADER.size
        if start + _META.size + 8 > len(self.buf):
            return None
        fields = _META.unpack_from(self.buf, start)
        magic, version, page_size, _flags, root, _seq, freelist, high_water, txid = fields
        checksum = struct.unpack_from("<Q", self.buf, start + _META.size)[0]
        if magic != _BOLT_MAGIC or version != _BOLT_VERSION or page_size == 0:
            return None
        if _fnv64a(self.buf[start:start + _META.size]) != checksum:
            return None
        return _Meta(page_size, root, freelist, high_water, txid)

    def page(self, pgid: int) -> tuple[int, int, int, int]:
        """Return (offset, flags, count, overflow) of page ``pgid``."""
        offset = pgid * self.page_size
        if offset + _PAGE_HEADER.size > len(self.buf):
            raise InvalidDatabaseError(f"page {pgid} beyond end of file")
        _id, flags, count, overflow = _PAGE_HEADER.unpack_from(self.buf, offset)
        return offset, flags, count, overflow

    @staticmethod
    def leaf_items(buf: bytes, offset: int, count: int) -> list[tuple[int, bytes, bytes]]:
        items = []
        for number in range(count):
            eoff = offset + _PAGE_HEADER.size + number * _LEAF_ELEMENT.size
            if eoff + _LEAF_ELEMENT.size > len(buf):
                raise InvalidDatabaseError("leaf element out of range")
            flags, pos, ksize, vsize = _LEAF_ELEMENT.unpack_from(buf, eoff)
            kstart = eoff + pos
            if kstart + ksize + vsize > len(buf):
                raise InvalidDatabaseError("leaf data out of range")
            key = bytes(buf[kstart:kstart + ksize])
            value = bytes(buf[kstart + ksize:kstart + ksize + vsize])
            items.append((flags, key, value))
        return items

    def branch_items(self, offset: int, count: int) -> list[tuple[bytes, int]]:
        items = []
        for number in range(count):
            eoff = offset + _PAGE_HEADER.size + number * _BRANCH_ELEMENT.size
            if eoff + _BRANCH_ELEMENT.size > len(self.buf):
                raise InvalidDatabaseError("branch element out of range")
            pos, ksize, child = _BRANCH_ELEMENT.unpack_from(self.buf, eoff)
            items.append((bytes(self.buf[eoff + pos:eoff + pos + ksize]), child))
        return items

    def iter_bucket(self, root: int, inline: bytes | None, seen: set[int] | None = None):
        """Yield (flags, key, value) of every element of a bucket in key order."""
        if root == 0:
            if inline is None:
                return
            _id, flags, count, _over = _PAGE_HEADER.unpack_from(inline, 0)
            if not flags & _LEAF_PAGE:
                raise InvalidDatabaseError("inline bucket is not a leaf page")
            yield from self.leaf_items(inline, 0, count)
            return
        yield from self._iter_page(root, seen if seen is not None else set())

    def _iter_page(self, pgid: int, seen: set[int]):
        if pgid in seen:
            raise InvalidDatabaseError(f"page {pgid} reached twice")
        seen.add(pgid)
        offset, flags, count, _over = self.page(pgid)
        if flags & _LEAF_PAGE:
            yield from self.leaf_items(self.buf, offset, count)
        elif flags & _BRANCH_PAGE:
            for _key, child in self.branch_items(offset, count):
                yield from self._iter_page(child, seen)
        else:
            raise InvalidDatabaseError(f"page {pgid} has invalid type {flags:#x}")

    def bucket(self, name: bytes) -> tuple[int, bytes | None] | None:
        for flags, key, value in self.iter_bucket(self.meta.root, None):
            if key == name and flags & _BUCKET_LEAF_FLAG:
                root = struct.unpack_from("<Q", value, 0)[0]
                return root, (value[16:] if root == 0 else None)
        return None

    def freelist_ids(self) -> list[int]:
        offset, flags, count, _over = self.page(self.meta.freelist)
        if not flags & _FREELIST_PAGE:
            raise InvalidDatabaseError("invalid freelist page")
        start = offset + _PAGE_HEADER.size
        if count == 0xFFFF:
            count = struct.unpack_from("<Q", self.buf, start)[0]
            start += 8
        if start + 8 * count > len(self.buf):
            raise InvalidDatabaseError("freelist out of range")
        return list(struct.unpack_from(f"<{count}Q", self.buf, start))

    def check(self) -> list[str]:
        """Return the consistency problems of the database."""
        problems: list[str] = []
        reachable: dict[int, str] = {0: "meta", 1: "meta"}
        try:
            freed = set(self.freelist_ids())
            _, _, _, over = self.page(self.meta.freelist)
            for pgid in range(self.meta.freelist, self.meta.freelist + over + 1):
                reachable[pgid] = "freelist"
            self._check_tree(self.meta.root, reachable, problems)
        except (InvalidDatabaseError, struct.error) as err:
            problems.append(str(err))
            return problems
        for pgid in range(self.meta.high_water):
            if pgid not in reachable and pgid not in freed:
                problems.append(f"page {pgid}: unreachable unfreed")
        return problems

    def _check_tree(self, pgid: int, reachable: dict[int, str], problems: list[str]) -> None:
        if pgid >= self.meta.high_water:
            problems.append(f"page {pgid}: out of bounds: {self.meta.high_water}")
            return
        offset, flags, count, over = self.page(pgid)
        for page_id in range(pgid, pgid + over + 1):
            if page_id in reachable:
                problems.append(f"page {page_id}: multiple references")
            reachable[page_id] = "tree"
        if flags & _BRANCH_PAGE:
            keys = []
            for key, child in self.branch_items(offset, count):
                keys.append(key)
                self._check_tree(child, reachable, problems)
            self._check_order(pgid, keys, problems)
        elif flags & _LEAF_PAGE:
            items = self.leaf_items(self.buf, offset, count)
            self._check_order(pgid, [key for _, key, _ in items], problems)
            for item_flags, _key, value in items:
                if item_flags & _BUCKET_LEAF_FLAG:
                    self._check_bucket(value, reachable, problems)
        else:
            problems.append(f"page {pgid}: invalid type: {flags:#x}")

    def _check_bucket(self, value: bytes, reachable: dict[int, str], problems: list[str]) -> None:
        if len(value) < 16:
            problems.append("bucket header too short")
            return
        root = struct.unpack_from("<Q", value, 0)[0]
        if root != 0:
            self._check_tree(root, reachable, problems)
            return
        inline = value[16:]
        items = list(self.iter_bucket(0, inline))
        self._check_order(0, [key for _, key, _ in items], problems)
        for item_flags, _key, nested in items:
            if item_flags & _BUCKET_LEAF_FLAG:
                self._check_bucket(nested, reachable, problems)

    @staticmethod
    def _check_order(pgid: int, keys: list[bytes], problems: list[str]) -> None:
        for previous, current in zip(keys, keys[1:]):
            if previous >= current:
                problems.append(f"page {pgid}: keys out of order")
                return


def verify_db(path: str) -> None:
    """Check the bolt database at ``path``; raise on any inconsistency."""
    if not path:
        raise PathRequiredError()
    if not os.path.exists(path):
        raise DatabaseNotFoundError()
    if _BoltFile(path).check():
        raise CorruptError()


def get_latest_etcd_revision(path: str) -> int:
    """Return the latest revision stored in the etcd backend database at ``path``."""
    try:
        os.stat(path)
    except OSError as err:
        raise InvalidDatabaseError(f"unable to stat backend db file: {err}") from err
    try:
        db = _BoltFile(path)
    except (OSError, InvalidDatabaseError, struct.error) as err:
        raise InvalidDatabaseError(f"unable to open backend boltdb file: {err}") from err
    try:
        bucket = db.bucket(b"key")
        if bucket is None:
            raise InvalidDatabaseError('cannot get hash of bucket "key"')
        last_key = b""
        for _flags, key, _value in db.iter_bucket(*bucket):
            last_key = key
    except struct.error as err:
        raise InvalidDatabaseError(str(err)) from err
    if len(last_key) < 8:
        return 1
    return struct.unpack_from(">Q", last_key, 0)[0]


def check_revision_consistency(db_path: str, store: Any) -> None:
    """Raise RevisionConsistencyFailure when etcd is behind the latest snapshot in ``store``."""
    try:
        etcd_revision = get_latest_etcd_revision(db_path)
    except ValidationError as err:
        raise RevisionConsistencyFailure(
            f"unable to get current etcd revision from backend db file: {err}"
        ) from err
    try:
        full_snap, delta_snaps = get_latest_full_snapshot_and_delta_snap_list(store)
    except Exception as err:
        raise RevisionConsistencyFailure(f"unable to get snapshots from store: {err}") from err
    if full_snap is None:
        logger.info("No snapshot found.")
        return
    latest = delta_snaps[-1].last_revision if delta_snaps else full_snap.last_revision
    if etcd_revision < latest:
        raise RevisionConsistencyFailure(
            f"current etcd revision ({etcd_revision}) is less than latest snapshot "
            f"revision ({latest}): possible data loss"
        )


# --- write-ahead log ----------------------------------------------------------

_METADATA_TYPE, _ENTRY_TYPE, _STATE_TYPE, _CRC_TYPE, _SNAPSHOT_TYPE = 1, 2, 3, 4, 5


def _decode_record(data: bytes) -> tuple[int, int, bytes]:
    rec_type = rec_crc = 0
    rec_data = b""
    for field, wire, value in _proto_fields(data):
        if field == 1 and wire == 0:
            rec_type = value
        elif field == 2 and wire == 0:
            rec_crc = value & 0xFFFFFFFF
        elif field == 3 and wire == 2:
            rec_data = value
    return rec_type, rec_crc, rec_data


def _wal_paths(waldir: str) -> list[str]:
    names = sorted(name for name in os.listdir(waldir) if name.endswith(WAL_SUFFIX))
    if not names:
        raise WALError("wal: file not found")
    return [os.path.join(waldir, name) for name in names]


def _verify_wal(waldir: str, index: int, term: int) -> None:
    crc = 0
    match = False
    metadata: bytes | None = None
    for path in _wal_paths(waldir):
        with open(path, "rb") as handle:
            data = handle.read()
        offset = 0
        while offset < len(data):
            if offset + 8 > len(data):
                raise _UnexpectedEOF(path, offset)
            frame = struct.unpack_from("<Q", data, offset)[0]
            if frame == 0:
                break
            length = frame & ((1 << 56) - 1)
            pad = (frame >> 56) & 0x7 if frame >> 63 else 0
            end = offset + 8 + length + pad
            if end > len(data):
                raise _UnexpectedEOF(path, offset)
            try:
                rec_type, rec_crc, rec_data = _decode_record(data[offset + 8:offset + 8 + length])
            except DecodeError as err:
                raise _UnexpectedEOF(path, offset) from err

            if rec_type == _CRC_TYPE:
                if crc != 0 and rec_crc != crc:
                    raise WALError("wal: crc mismatch")
                crc = rec_crc
            else:
                crc = _crc32c(rec_data, crc)
                if rec_crc != crc:
                    raise WALError("wal: crc mismatch")
                if rec_type == _METADATA_TYPE:
                    if metadata is not None and metadata != rec_data:
                        raise WALError("wal: metadata conflict")
                    metadata = rec_data
                elif rec_type == _SNAPSHOT_TYPE:
                    snap_index = snap_term = 0
                    for field, wire, value in _proto_fields(rec_data):
                        if field == 1 and wire == 0:
                            snap_index = value
                        elif field == 2 and wire == 0:
                            snap_term = value
                    if snap_index == index:
                        if snap_term != term:
                            raise WALError("wal: snapshot mismatch")
                        match = True
                elif rec_type not in (_ENTRY_TYPE, _STATE_TYPE):
                    raise WALError(f"unexpected block type {rec_type}")
            offset = end
    if not match:
        raise WALError("wal: snapshot not found")


def _repair_wal(waldir: str, err: _UnexpectedEOF) -> bool:
    try:
        if err.path != _wal_paths(waldir)[-1]:
            return False
        shutil.copyfile(err.path, err.path + ".broken")
        with open(err.path, "r+b") as handle:
            handle.truncate(err.offset)
    except OSError:
        return False
    return True


def _verify_wal_dir(waldir: str, index: int, term: int) -> None:
    repaired = False
    while True:
        try:
            _verify_wal(waldir, index, term)
            return
        except _UnexpectedEOF as err:
            if repaired or not _repair_wal(waldir, err):
                logger.warning("WAL error (%s) cannot be repaired.", err)
                raise
            logger.info("repaired WAL error (%s).", err)
            repaired = True


# --- validator -----------------------------------------------------------------

@dataclass
class ValidatorConfig:
    """Where the data lives and, optionally, the snapshot store to compare with."""

    data_dir: str
    snapstore: Any = None


class DataValidator:
    """Validates an etcd data directory."""

    def __init__(self, config: ValidatorConfig, log: logging.Logger | None = None) -> None:
        self.config = config
        self.logger = log or logger

    @property
    def member_dir(self) -> str:
        return os.path.join(self.config.data_dir, "member")

    @property
    def wal_dir(self) -> str:
        return os.path.join(self.member_dir, "wal")

    @property
    def snap_dir(self) -> str:
        return os.path.join(self.member_dir, "snap")

    @property
    def backend_path(self) -> str:
        return os.path.join(self.snap_dir, "db")

    def validate(self, mode: Mode) -> DataDirStatus:
        """Return the status of the data directory.

        Raises ValidationFailed when the directory does not exist or cannot be examined.
        """
        data_dir = self.config.data_dir
        try:
            exists = directory_exist(data_dir)
        except OSError as err:
            raise ValidationFailed(DataDirStatus.DATA_DIRECTORY_ERROR, str(err)) from err
        if not exists:
            raise ValidationFailed(
                DataDirStatus.DATA_DIRECTORY_NOT_EXIST, f"Directory does not exist: {data_dir}"
            )

        self.logger.info("Checking for data directory structure validity...")
        try:
            structure_valid = all(
                directory_exist(path) for path in (self.member_dir, self.snap_dir, self.wal_dir)
            )
        except OSError as err:
            raise ValidationFailed(DataDirStatus.DATA_DIRECTORY_ERROR, str(err)) from err
        if not structure_valid:
            self.logger.info("Data directory structure invalid.")
            return DataDirStatus.DATA_DIRECTORY_INV_STRUCT

        if self.config.snapstore is not None:
            self.logger.info("Checking for revision consistency...")
            try:
                check_revision_consistency(self.backend_path, self.config.snapstore)
            except RevisionConsistencyFailure as err:
                self.logger.info("Etcd revision inconsistent with latest snapshot revision: %s", err)
                return DataDirStatus.REVISION_CONSISTENCY_ERROR
        else:
            self.logger.info("Skipping check for revision consistency, since no snapstore configured.")

        if Mode(mode) is Mode.FULL:
            self.logger.info("Checking for data directory files corruption...")
            try:
                self._check_for_data_corruption()
            except (ValidationError, OSError, struct.error) as err:
                self.logger.info("Data directory corrupt. %s", err)
                return DataDirStatus.DATA_DIRECTORY_CORRUPT

        self.logger.info("Data directory valid.")
        return DataDirStatus.DATA_DIRECTORY_VALID

    def _check_for_data_corruption(self) -> None:
        index = term = 0
        self.logger.info("Verifying snap directory...")
        try:
            snapshot = self._verify_snap_dir()
            index, term = snapshot.index, snapshot.term
        except NoSnapshotError:
            pass
        except (ValidationError, OSError) as err:
            raise ValidationError(f"Invalid snapshot files: {err}") from err
        self.logger.info("Verifying WAL directory...")
        try:
            _verify_wal_dir(self.wal_dir, index, term)
        except (ValidationError, OSError) as err:
            raise ValidationError(f"Invalid wal files: {err}") from err
        self.logger.info("Verifying DB file...")
        try:
            verify_db(self.backend_path)
        except (ValidationError, OSError, struct.error) as err:
            raise ValidationError(f"Invalid db files: {err}") from err

    def _verify_snap_dir(self) -> RaftSnapshot:
        snaps = check_suffix(os.listdir(self.snap_dir))
        if not snaps:
            raise NoSnapshotError()
        for name in sorted(snaps, reverse=True):
            try:
                return read_snapshot(os.path.join(self.snap_dir, name))
            except (ValidationError, OSError) as err:
                self.logger.info("Cannot use snapshot %s: %s", name, err)
        raise NoSnapshotError()