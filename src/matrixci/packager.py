# packager.py
from __future__ import annotations

import logging
import os
import tarfile
import uuid
import zipfile
from pathlib import Path

from .errors import PackagingError
from .model import ArchiveFormat, Artifact, JobDescriptor

logger = logging.getLogger(__name__)


def archive_filename(name: str, fmt: ArchiveFormat, *, job: str = "") -> str:
    """
    Give `name` the extension of `fmt`, keeping it when already present.

    A name carrying the other format's extension is a declaration mistake
    (e.g. "app-Windows.zip" resolved to tar.gz) and raises PackagingError.
    """
    for other in ArchiveFormat:
        if name.endswith(other.extension):
            if other is fmt:
                return name
            raise PackagingError(
                job=job,
                message=f"archive name {name!r} does not match resolved format {fmt.value}",
                details={"archive": name, "format": fmt.value},
            )
    return name + fmt.extension


def _write_zip(dest: Path, binary: Path) -> None:
    with zipfile.ZipFile(dest, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.write(binary, arcname=binary.name)


def _write_tar(dest: Path, binary: Path) -> None:
    with tarfile.open(dest, mode="w:gz") as tar:
        tar.add(str(binary), arcname=binary.name, recursive=False)


_WRITERS = {
    ArchiveFormat.ZIP: _write_zip,
    ArchiveFormat.TAR_GZ: _write_tar,
}


def package(
    job: JobDescriptor,
    *,
    source_dir: Path,
    binary: str,
    archive: str,
    fmt: ArchiveFormat,
    dest_dir: Path,
) -> Artifact:
    """
    Wrap the built `binary` (found in `source_dir`) into `dest_dir/<archive>`.

    The archive is written under a temporary name and renamed into place.
    """
    bin_path = source_dir / binary
    if not bin_path.is_file():
        raise PackagingError(
            job=job.id,
            message=f"built binary {binary!r} not found",
            details={"searched": str(source_dir)},
        )

    name = archive_filename(archive, fmt, job=job.id)
    dest_dir.mkdir(parents=True, exist_ok=True)
    dest = dest_dir / name
    tmp = dest_dir / f".{name}.{uuid.uuid4().hex}.tmp"

    try:
        _WRITERS[fmt](tmp, bin_path)
        os.replace(tmp, dest)
    except OSError as e:
        raise PackagingError(job=job.id, message=f"could not write archive: {e}", details={"archive": str(dest)}) from e
    finally:
        tmp.unlink(missing_ok=True)

    logger.info("[%s] packaged %s as %s", job.id, binary, dest)
    return Artifact(job_id=job.id, name=name, path=dest, format=fmt)
