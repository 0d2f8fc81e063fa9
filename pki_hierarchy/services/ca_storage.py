"""
CA Storage - on-disk layout of CAs and issued artifacts.

All files are written to a temporary sibling and renamed into place, so a
reader never observes a half-written key or certificate.
"""

import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Iterable, List, Optional

import structlog
from cryptography import x509

from pki_hierarchy.core.exceptions import ArtifactError
from pki_hierarchy.schemas.ca import CertificateAuthority, HierarchyManifest
from pki_hierarchy.services.crypto_provider import load_certificate, load_certificates

logger = structlog.get_logger()

KEY_FILE_MODE = 0o400
CERT_FILE_MODE = 0o444
PUBLIC_FILE_MODE = 0o644
PRIVATE_DIR_MODE = 0o700

MANIFEST_FILENAME = "hierarchy.json"


def _chmod(path: Path, mode: int) -> None:
    # Best-effort on filesystems without POSIX permissions
    try:
        os.chmod(path, mode)
    except OSError:
        logger.warning("Could not set file permissions", path=str(path), mode=oct(mode))


def write_file(path: Path, data: bytes, mode: int = PUBLIC_FILE_MODE) -> Path:
    """
    Atomically write ``data`` to ``path`` with permission ``mode``.

    Raises:
        ArtifactError: If the file cannot be written
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        _chmod(Path(tmp_name), mode)
        os.replace(tmp_name, path)
    except OSError as e:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise ArtifactError(f"Failed to write {path}: {e}") from e
    return path


def read_bytes(path: Path) -> bytes:
    try:
        return Path(path).read_bytes()
    except OSError as e:
        raise ArtifactError(f"Failed to read {path}: {e}") from e


def read_certificate(path: Path) -> x509.Certificate:
    return load_certificate(read_bytes(path))


def read_chain(path: Path) -> List[x509.Certificate]:
    return load_certificates(read_bytes(path))


def remove_files(paths: Iterable[Path]) -> List[Path]:
    """Delete the given files if present. Returns the files removed."""
    removed = []
    for path in paths:
        path = Path(path)
        try:
            path.unlink()
        except FileNotFoundError:
            continue
        except OSError as e:
            raise ArtifactError(f"Failed to remove {path}: {e}") from e
        removed.append(path)
    return removed


def remove_tree(path: Path) -> None:
    path = Path(path)
    if not path.exists():
        return
    # Read-only key and certificate files must be writable to be removed on some platforms
    for root, _dirs, files in os.walk(path):
        for name in files:
            _chmod(Path(root) / name, 0o600)
    try:
        shutil.rmtree(path)
    except OSError as e:
        raise ArtifactError(f"Failed to remove {path}: {e}") from e


def ensure_ca_dirs(ca: CertificateAuthority) -> None:
    """Create the directory layout of ``ca``."""
    try:
        for directory in (ca.certs_dir, ca.csr_path.parent, ca.newcerts_dir, ca.crl_dir):
            directory.mkdir(parents=True, exist_ok=True)
        ca.private_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ArtifactError(f"Failed to create directories for {ca.name}: {e}") from e
    _chmod(ca.private_dir, PRIVATE_DIR_MODE)


def newcerts_path(ca: CertificateAuthority, serial: int) -> Path:
    """Archive copy of a certificate signed by ``ca``."""
    return ca.newcerts_dir / f"{serial:04X}.pem"


def write_manifest(pki_dir: Path, manifest: HierarchyManifest) -> Path:
    data = manifest.model_dump_json(indent=2).encode("utf-8")
    return write_file(Path(pki_dir) / MANIFEST_FILENAME, data, PUBLIC_FILE_MODE)


def read_manifest(pki_dir: Path) -> Optional[HierarchyManifest]:
    """The hierarchy manifest, or None if absent."""
    path = Path(pki_dir) / MANIFEST_FILENAME
    if not path.exists():
        return None
    try:
        return HierarchyManifest.model_validate(json.loads(read_bytes(path)))
    except ValueError as e:
        raise ArtifactError(f"Corrupt hierarchy manifest {path}: {e}") from e
