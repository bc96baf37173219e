from __future__ import annotations

import grp
import os
import pwd
import shutil
import stat
import tarfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import BinaryIO, Iterable, Iterator, List, Optional, Set, Tuple

from .constants import COPY_BUFSIZE
from .errors import EntryMissingError, SourceMissingError, UnsupportedEntryError
from .hashutil import HashingReader
from .log import get_logger, trace

logger = get_logger(__name__)


@dataclass(frozen=True)
class MissingPolicy:
    """Which absences a create/extract call tolerates instead of failing on.

    ``ignore_missing_sources`` covers manifest paths that do not exist on disk
    when creating; ``ignore_missing_entries`` covers manifest paths that are
    not present in the archive when extracting.
    """

    ignore_missing_sources: bool = False
    ignore_missing_entries: bool = False

    @classmethod
    def strict(cls) -> "MissingPolicy":
        return cls(False, False)

    @classmethod
    def lenient(cls) -> "MissingPolicy":
        return cls(True, True)

    @classmethod
    def from_flag(cls, ignore_missing: bool) -> "MissingPolicy":
        return cls.lenient() if ignore_missing else cls.strict()


@dataclass
class CreateReport:
    written: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)


@dataclass
class ExtractReport:
    extracted: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)


# -------- Ownership strategies --------

class OwnershipStrategy:
    """Decide who owns an extracted file.

    ``resolve`` returns the ``(uid, gid)`` to chown to, or None to leave the
    ownership the extracting process gave the file.
    """

    def resolve(self, member: tarfile.TarInfo) -> Optional[Tuple[int, int]]:
        raise NotImplementedError


class ByNameOwnership(OwnershipStrategy):
    """Map the archived user/group names through the local databases.

    The user and the group are looked up independently; whichever is unknown
    on this host falls back to the numeric id recorded in the archive.
    """

    def resolve(self, member: tarfile.TarInfo) -> Optional[Tuple[int, int]]:
        uid = member.uid
        if member.uname:
            try:
                uid = pwd.getpwnam(member.uname).pw_uid
            except KeyError:
                logger.debug("unknown user; using archived uid", uname=member.uname, uid=uid)
        gid = member.gid
        if member.gname:
            try:
                gid = grp.getgrnam(member.gname).gr_gid
            except KeyError:
                logger.debug("unknown group; using archived gid", gname=member.gname, gid=gid)
        return uid, gid


class NumericOwnership(OwnershipStrategy):
    def resolve(self, member: tarfile.TarInfo) -> Optional[Tuple[int, int]]:
        return member.uid, member.gid


class SkipOwnership(OwnershipStrategy):
    def resolve(self, member: tarfile.TarInfo) -> Optional[Tuple[int, int]]:
        return None


OWNERSHIP_STRATEGIES = {
    "name": ByNameOwnership,
    "numeric": NumericOwnership,
    "skip": SkipOwnership,
}


# -------- Helpers --------

@contextmanager
def _umask(mask: int) -> Iterator[None]:
    old = os.umask(mask)
    try:
        yield
    finally:
        os.umask(old)


def is_local(path: str) -> bool:
    """True when ``path`` is relative and stays below whatever it is joined to."""
    if not path or os.path.isabs(path):
        return False
    norm = os.path.normpath(path)
    return norm != os.pardir and not norm.startswith(os.pardir + os.sep)


def _user_name(uid: int) -> str:
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return ""


def _group_name(gid: int) -> str:
    try:
        return grp.getgrgid(gid).gr_name
    except KeyError:
        return ""


def _header_from_stat(name: str, st: os.stat_result) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name)
    info.mode = stat.S_IMODE(st.st_mode)
    info.uid = st.st_uid
    info.gid = st.st_gid
    info.uname = _user_name(st.st_uid)
    info.gname = _group_name(st.st_gid)
    info.mtime = int(st.st_mtime)
    if stat.S_ISDIR(st.st_mode):
        info.type = tarfile.DIRTYPE
    else:
        info.type = tarfile.REGTYPE
        info.size = st.st_size
    return info


# -------- Manifest --------

class Manifest:
    """Ordered, duplicate-free list of paths that make up a site package.

    Relative entries are resolved against ``root`` both when creating and when
    extracting, so the same manifest can be applied to different trees.
    """

    def __init__(
        self,
        root: str,
        paths: Optional[Iterable[str]] = None,
        *,
        ignore_missing: bool = False,
        policy: Optional[MissingPolicy] = None,
        ownership: Optional[OwnershipStrategy] = None,
    ):
        self.root = root
        self.policy = policy if policy is not None else MissingPolicy.from_flag(ignore_missing)
        self.ownership = ownership if ownership is not None else ByNameOwnership()
        self.paths: List[str] = []
        self._index: Set[str] = set()
        for p in paths or ():
            self.add(p)

    @property
    def ignore_missing(self) -> bool:
        return self.policy.ignore_missing_sources and self.policy.ignore_missing_entries

    @ignore_missing.setter
    def ignore_missing(self, value: bool) -> None:
        self.policy = MissingPolicy.from_flag(value)

    def __len__(self) -> int:
        return len(self.paths)

    def __iter__(self) -> Iterator[str]:
        return iter(self.paths)

    def __contains__(self, path: object) -> bool:
        return path in self._index

    def has(self, path: str) -> bool:
        return path in self._index

    def add(self, path: str) -> None:
        if path not in self._index:
            self._index.add(path)
            self.paths.append(path)

    def resolve(self, path: str) -> str:
        if is_local(path):
            full = os.path.normpath(os.path.join(self.root, path))
            trace(__name__, "resolved relative path", rel=path, abs=full)
            return full
        return path

    # -------- create --------

    def create(self, fh: BinaryIO) -> CreateReport:
        """Write every manifest entry, in order, as a tar stream to ``fh``.

        Directories are stored as bare entries (their contents are not walked).
        The tar end-of-archive marker is written on success; ``fh`` itself is
        left open.

        Raises:
            SourceMissingError: an entry does not exist and missing sources are
                not tolerated.
            UnsupportedEntryError: an entry is neither a directory nor a
                regular file.
        """
        report = CreateReport()
        with tarfile.open(fileobj=fh, mode="w|", format=tarfile.PAX_FORMAT) as tf:
            for name in self.paths:
                if self._add_entry(tf, name):
                    report.written.append(name)
                else:
                    report.missing.append(name)
        return report

    def _add_entry(self, tf: tarfile.TarFile, name: str) -> bool:
        path = self.resolve(name)
        attrs = {"name": name, "path": path}
        try:
            st = os.stat(path)
        except FileNotFoundError as exc:
            if self.policy.ignore_missing_sources:
                logger.info("ignoring missing", **attrs)
                return False
            raise SourceMissingError(f"missing source: {path}") from exc

        attrs["mode"] = stat.filemode(st.st_mode)
        if stat.S_ISDIR(st.st_mode):
            tf.addfile(_header_from_stat(name, st))
            logger.info("add dir", **attrs)
            return True
        if not stat.S_ISREG(st.st_mode):
            raise UnsupportedEntryError(f"non-regular files not supported: {path}")

        info = _header_from_stat(name, st)
        with open(path, "rb") as src:
            hr = HashingReader(src)
            tf.addfile(info, hr)
        attrs.update(bytes=hr.count, SHA256=hr.hexdigest())
        logger.info("add file", **attrs)
        return True

    # -------- extract --------

    def extract(self, fh: BinaryIO) -> ExtractReport:
        """Restore the manifest's entries from the tar stream in ``fh``.

        Members that are not in the manifest are skipped without touching the
        filesystem. Manifest entries absent from the archive are checked only
        after the whole stream has been consumed.

        Raises:
            EntryMissingError: a manifest entry was not found in the archive
                and missing entries are not tolerated.
            UnsupportedEntryError: a requested member is neither a directory
                nor a regular file.
        """
        report = ExtractReport()
        extracted: Set[str] = set()
        with tarfile.open(fileobj=fh, mode="r|") as tf:
            for member in tf:
                name = self._manifest_name(member)
                if name is None:
                    logger.debug("skipping", name=member.name)
                    report.skipped.append(member.name)
                    continue
                self._extract_member(tf, member, name)
                extracted.add(name)
                report.extracted.append(name)

        for p in self.paths:
            if p in extracted:
                continue
            if self.policy.ignore_missing_entries:
                logger.info("missing", name=p)
                report.missing.append(p)
            else:
                raise EntryMissingError(f"not found in archive: {p}")
        return report

    def _manifest_name(self, member: tarfile.TarInfo) -> Optional[str]:
        if member.name in self._index:
            return member.name
        # tarfile drops the trailing slash of directory members
        if member.isdir() and member.name + "/" in self._index:
            return member.name + "/"
        return None

    def _extract_member(self, tf: tarfile.TarFile, member: tarfile.TarInfo, name: str) -> None:
        path = self.resolve(name)
        mode = stat.S_IMODE(member.mode)
        attrs = {"name": name, "path": path, "mode": oct(mode)}

        if member.isdir():
            logger.info("mkdir", **attrs)
            try:
                with _umask(0):
                    os.mkdir(path, mode)
            except FileExistsError:
                logger.debug("directory exists", **attrs)
                return
            # mkdir(2) may drop setuid/setgid/sticky
            os.chmod(path, mode)
            return

        if not member.isreg():
            raise UnsupportedEntryError(f"non-regular files not supported: {name}")

        logger.debug("opening", **attrs)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o000)
        with open(fd, "wb") as dst:
            src = tf.extractfile(member)
            hr = HashingReader(src)
            shutil.copyfileobj(hr, dst, COPY_BUFSIZE)

        owner = self.ownership.resolve(member)
        if owner is not None:
            os.chown(path, owner[0], owner[1])
            attrs.update(uid=owner[0], gid=owner[1])
        os.chmod(path, mode)

        attrs.update(bytes=hr.count, SHA256=hr.hexdigest())
        logger.info("extracted file", **attrs)


def load(
    path: str,
    root: str,
    *,
    ignore_missing: bool = False,
    policy: Optional[MissingPolicy] = None,
    ownership: Optional[OwnershipStrategy] = None,
) -> Manifest:
    """Read a manifest file: one path per line, UTF-8, no escaping.

    Blank lines are kept as (empty) entries.
    """
    m = Manifest(root, ignore_missing=ignore_missing, policy=policy, ownership=ownership)
    with open(path, "r", encoding="utf-8", newline="\n") as fh:
        for line in fh:
            if line.endswith("\n"):
                line = line[:-1]
            if line.endswith("\r"):
                line = line[:-1]
            logger.debug("adding path to manifest", manifest=path, path=line)
            m.add(line)
    return m
