"""
Copy-on-write clone and file-attribute primitives.

Linux filesystems with reflink support (Btrfs, XFS, bcachefs) expose the
FICLONE ioctl; macOS/APFS exposes clonefile(2). Both share the source's data
blocks with a brand-new destination inode and fail if the destination exists.
"""
from __future__ import annotations

import ctypes
import ctypes.util
import errno
import os
import stat
import struct
import sys
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from .errors import CloneError, MetadataError, MissingDependencyError, UnsupportedPlatformError

CloneFunc = Callable[[str, str], None]

FICLONE = 0x40049409  # _IOW(0x94, 9, int)
CLONE_NOFOLLOW = 0x0001

_UNSUPPORTED_ERRNOS = {errno.EOPNOTSUPP, errno.ENOTTY, errno.EINVAL, errno.ENOSYS}
if hasattr(errno, "ENOTSUP"):
    _UNSUPPORTED_ERRNOS.add(errno.ENOTSUP)


def _describe_clone_failure(src: str, dst: str, err: int) -> str:
    if err == errno.EXDEV:
        reason = "source and destination are on different volumes"
    elif err == errno.EEXIST:
        reason = "destination already exists"
    elif err in _UNSUPPORTED_ERRNOS:
        reason = "filesystem does not support copy-on-write clones"
    else:
        reason = os.strerror(err)
    return f"Cannot clone {src} -> {dst}: {reason}"


def _unlink_quietly(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


def _clone_linux(src: str, dst: str) -> None:
    import fcntl

    try:
        src_fd = os.open(src, os.O_RDONLY)
    except OSError as e:
        raise CloneError(f"Cannot open clone source {src}: {e.strerror}") from e
    try:
        try:
            dst_fd = os.open(dst, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except OSError as e:
            raise CloneError(_describe_clone_failure(src, dst, e.errno)) from e
        try:
            fcntl.ioctl(dst_fd, FICLONE, src_fd)
        except OSError as e:
            os.close(dst_fd)
            _unlink_quietly(dst)
            raise CloneError(_describe_clone_failure(src, dst, e.errno)) from e
        os.close(dst_fd)
    finally:
        os.close(src_fd)


def _load_clonefile() -> Callable[[bytes, bytes, int], int]:
    libc = ctypes.CDLL(ctypes.util.find_library("c") or "libSystem.dylib", use_errno=True)
    fn = libc.clonefile  # AttributeError before macOS 10.12
    fn.argtypes = [ctypes.c_char_p, ctypes.c_char_p, ctypes.c_uint32]
    fn.restype = ctypes.c_int
    return fn


def _make_darwin_clone() -> CloneFunc:
    clonefile = _load_clonefile()

    def _clone_darwin(src: str, dst: str) -> None:
        if clonefile(os.fsencode(src), os.fsencode(dst), CLONE_NOFOLLOW) != 0:
            err = ctypes.get_errno()
            raise CloneError(_describe_clone_failure(src, dst, err))

    return _clone_darwin


def get_clone_primitive() -> CloneFunc:
    """Return the host's clone function or raise UnsupportedPlatformError."""
    if sys.platform.startswith("linux"):
        return _clone_linux
    if sys.platform == "darwin":
        try:
            return _make_darwin_clone()
        except (OSError, AttributeError) as e:
            raise UnsupportedPlatformError(f"clonefile(2) is unavailable: {e}") from e
    raise UnsupportedPlatformError(f"No copy-on-write clone primitive on platform {sys.platform!r}")


def clone_file(src: str, dst: str) -> None:
    get_clone_primitive()(src, dst)


# struct fiemap header and struct fiemap_extent from <linux/fiemap.h>
FS_IOC_FIEMAP = 0xC020660B
FIEMAP_FLAG_SYNC = 0x0001
FIEMAP_EXTENT_LAST = 0x0001
FIEMAP_EXTENT_SHARED = 0x2000
_FIEMAP_HEADER = struct.Struct("=QQIIII")
_FIEMAP_EXTENT = struct.Struct("=QQQQQIIII")
_FIEMAP_BATCH = 128


def _file_extents(fd: int) -> List[Tuple[int, int, int, int]]:
    """(logical, physical, length, flags) for every extent of an open file."""
    import fcntl

    extents: List[Tuple[int, int, int, int]] = []
    start = 0
    while True:
        buf = bytearray(_FIEMAP_HEADER.size + _FIEMAP_BATCH * _FIEMAP_EXTENT.size)
        _FIEMAP_HEADER.pack_into(buf, 0, start, 0xFFFFFFFFFFFFFFFF - start, FIEMAP_FLAG_SYNC, 0, _FIEMAP_BATCH, 0)
        fcntl.ioctl(fd, FS_IOC_FIEMAP, buf, True)
        mapped = _FIEMAP_HEADER.unpack_from(buf, 0)[3]
        if mapped == 0:
            return extents
        for i in range(mapped):
            logical, physical, length, _, _, flags, _, _, _ = _FIEMAP_EXTENT.unpack_from(
                buf, _FIEMAP_HEADER.size + i * _FIEMAP_EXTENT.size
            )
            extents.append((logical, physical, length, flags))
            if flags & FIEMAP_EXTENT_LAST:
                return extents
        last = extents[-1]
        start = last[0] + last[2]


def extents_shared(a: str, b: str) -> bool:
    """True when ``a`` and ``b`` already map the same shared physical extents.

    Only Linux exposes FIEMAP; elsewhere, and on filesystems without it,
    the answer is False.
    """
    if not sys.platform.startswith("linux"):
        return False
    try:
        fa = os.open(a, os.O_RDONLY)
    except OSError:
        return False
    try:
        try:
            fb = os.open(b, os.O_RDONLY)
        except OSError:
            return False
        try:
            ea, eb = _file_extents(fa), _file_extents(fb)
        except OSError:
            return False
        finally:
            os.close(fb)
    finally:
        os.close(fa)
    if not ea or len(ea) != len(eb):
        return False
    for (la, pa, na, fla), (lb, pb, nb, flb) in zip(ea, eb):
        if (la, pa, na) != (lb, pb, nb):
            return False
        if not (fla & flb & FIEMAP_EXTENT_SHARED):
            return False
    return True


@dataclass
class FileMetadata:
    size: int
    mode: int
    uid: int
    gid: int
    atime_ns: int
    mtime_ns: int
    device: int
    inode: int
    nlink: int = 1
    flags: Optional[int] = None
    xattrs: Dict[str, bytes] = field(default_factory=dict)

    def same_inode(self, other: "FileMetadata") -> bool:
        return self.device == other.device and self.inode == other.inode


class _OsXattrs:
    """Linux ``os.*xattr``; only ``user.*`` names are ever removed."""

    def __init__(self, path: str) -> None:
        self.path = path

    def names(self) -> List[str]:
        return os.listxattr(self.path, follow_symlinks=False)

    def get(self, name: str) -> bytes:
        return os.getxattr(self.path, name, follow_symlinks=False)

    def set(self, name: str, value: bytes) -> None:
        os.setxattr(self.path, name, value, follow_symlinks=False)

    def remove(self, name: str) -> None:
        os.removexattr(self.path, name, follow_symlinks=False)

    @staticmethod
    def removable(name: str) -> bool:
        return name.startswith("user.")


class _DarwinXattrs:
    """macOS attributes through the ``xattr`` package.

    clonefile(2) copies every attribute of the master, so any name the
    duplicate did not carry is removed from the clone.
    """

    def __init__(self, path: str) -> None:
        import xattr

        self._attrs = xattr.xattr(path, options=xattr.XATTR_NOFOLLOW)

    def names(self) -> List[str]:
        return list(self._attrs.list())

    def get(self, name: str) -> bytes:
        return self._attrs.get(name)

    def set(self, name: str, value: bytes) -> None:
        self._attrs.set(name, value)

    def remove(self, name: str) -> None:
        self._attrs.remove(name)

    @staticmethod
    def removable(name: str) -> bool:
        return True


def require_xattr_support() -> None:
    if sys.platform != "darwin":
        return
    try:
        import xattr  # noqa: F401
    except ImportError:
        raise MissingDependencyError(
            "The 'xattr' package is required on macOS to keep extended attributes. "
            "Install it with 'pip install xattr'."
        ) from None


def _xattr_access(path: str):
    if sys.platform == "darwin":
        return _DarwinXattrs(path)
    if hasattr(os, "listxattr"):
        return _OsXattrs(path)
    return None


def _read_xattrs(path: str) -> Dict[str, bytes]:
    access = _xattr_access(path)
    if access is None:
        return {}
    try:
        names = access.names()
    except OSError as e:
        if e.errno in _UNSUPPORTED_ERRNOS:
            return {}
        raise
    return {name: access.get(name) for name in names}


def capture_metadata(path: str, include_xattrs: bool = True) -> FileMetadata:
    try:
        st = os.lstat(path)
        if not stat.S_ISREG(st.st_mode):
            raise MetadataError(f"{path} is no longer a regular file")
        xattrs = _read_xattrs(path) if include_xattrs else {}
    except OSError as e:
        raise MetadataError(f"Cannot read attributes of {path}: {e.strerror}") from e
    return FileMetadata(
        size=st.st_size,
        mode=st.st_mode,
        uid=st.st_uid,
        gid=st.st_gid,
        atime_ns=st.st_atime_ns,
        mtime_ns=st.st_mtime_ns,
        device=st.st_dev,
        inode=st.st_ino,
        nlink=st.st_nlink,
        flags=getattr(st, "st_flags", None),
        xattrs=xattrs,
    )


def restore_metadata(
    path: str,
    meta: FileMetadata,
    restore_ownership: bool = True,
    restore_xattrs: bool = True,
) -> None:
    """Apply captured attributes to ``path``.

    Every step is attempted; the failures are reported together in one
    MetadataError.
    """
    failures: List[str] = []

    if restore_ownership:
        try:
            st = os.lstat(path)
            if (st.st_uid, st.st_gid) != (meta.uid, meta.gid):
                os.chown(path, meta.uid, meta.gid, follow_symlinks=False)
        except OSError as e:
            failures.append(f"ownership {meta.uid}:{meta.gid}: {e.strerror}")

    # chown may clear setuid/setgid, so the mode goes after it
    try:
        os.chmod(path, stat.S_IMODE(meta.mode))
    except OSError as e:
        failures.append(f"mode {oct(stat.S_IMODE(meta.mode))}: {e.strerror}")

    access = _xattr_access(path) if restore_xattrs else None
    if access is not None:
        try:
            present = set(access.names())
        except OSError:
            present = set()
        for name, value in meta.xattrs.items():
            try:
                access.set(name, value)
            except OSError as e:
                failures.append(f"xattr {name}: {e.strerror}")
        for name in present - set(meta.xattrs):
            if not access.removable(name):
                continue
            try:
                access.remove(name)
            except OSError as e:
                failures.append(f"xattr {name}: {e.strerror}")

    try:
        os.utime(path, ns=(meta.atime_ns, meta.mtime_ns))
    except OSError as e:
        failures.append(f"timestamps: {e.strerror}")

    # immutable/append-only flags would block the steps above
    if meta.flags and hasattr(os, "chflags"):
        try:
            os.chflags(path, meta.flags, follow_symlinks=False)
        except OSError as e:
            failures.append(f"flags {meta.flags:#x}: {e.strerror}")

    if failures:
        raise MetadataError(f"Could not restore attributes on {path}: " + "; ".join(failures))
