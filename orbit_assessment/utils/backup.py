"""
Bundle files for exchanging ORBIT assessments between installations.

Writes export bundles as ``.json``, ``.json.gz`` or ``.zip`` (holding a
single ``data.json``), stamps a checksum of the data block into the bundle
metadata, and reads them back with size, version and integrity checks
before handing them to the merge engine.
"""

from __future__ import annotations

import gzip
import hashlib
import json
import zipfile
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any, Literal

from sqlalchemy.orm import sessionmaker

from ..application import api
from ..domain.merge import ImportResult, ProgressCallback
from ..domain.schemas import ExportBundle, parse_bundle
from ..infrastructure.config import get_settings
from ..infrastructure.exceptions import BundleImportError, ExportError, OrbitAssessmentError
from ..infrastructure.logging import get_logger, log_operation

logger = get_logger(__name__)

BUNDLE_EXTENSIONS = (".json", ".json.gz", ".zip")
ZIP_MEMBER = "data.json"


def bundle_checksum(data: dict[str, Any]) -> str:
    """sha256 over the canonical JSON of a bundle's ``data`` block."""
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _bundle_format(path: Path) -> str:
    name = path.name.lower()
    for ext in (".json.gz", ".zip", ".json"):
        if name.endswith(ext):
            return ext
    raise BundleImportError(
        f"Unsupported bundle file type: {path.name} (expected one of {', '.join(BUNDLE_EXTENSIONS)})",
        file_path=str(path),
    )


class BundleService:
    """
    Writes, reads and verifies bundle files, and drives file-based import/export.

    Example:
        >>> service = BundleService(SessionLocal)
        >>> path = service.export_to_file("./exports", compress=True)
        >>> result = service.import_from_file(path, dry_run=True)
        >>> result.skipped
        4
    """

    def __init__(self, SessionLocal: sessionmaker | None = None):
        """
        Args:
            SessionLocal: Session factory; only needed for export and import,
                not for reading or verifying files
        """
        self.SessionLocal = SessionLocal
        self.logger = get_logger(self.__class__.__name__)
        self.settings = get_settings()

    def _sessions(self) -> sessionmaker:
        if self.SessionLocal is None:
            raise OrbitAssessmentError("BundleService needs a session factory for database work")
        return self.SessionLocal

    # -------- writing --------
    @log_operation("write_bundle")
    def write_bundle(
        self,
        bundle: ExportBundle,
        export_dir: str | Path | None = None,
        filename: str | None = None,
        compress: bool | None = None,
    ) -> Path:
        """
        Serialize a bundle to disk with its checksum filled in.

        Args:
            bundle: Bundle to write
            export_dir: Target directory (defaults to ``IMPORT_EXPORT_DIRECTORY``)
            filename: File name; its extension picks the format. Auto-generated if None
            compress: For generated names, write ``.json.gz`` instead of ``.json``

        Returns:
            Path to the written file

        Raises:
            ExportError: If the file cannot be written
        """
        export_dir = Path(export_dir or self.settings.imports.export_directory)
        export_dir.mkdir(parents=True, exist_ok=True)

        if filename is None:
            if compress is None:
                compress = self.settings.imports.compress_exports
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            extension = "json.gz" if compress else "json"
            filename = f"orbit_{bundle.scope}_export_{timestamp}.{extension}"

        path = export_dir / filename
        fmt = _bundle_format(path)

        payload = bundle.to_json_dict()
        payload["metadata"]["checksum"] = bundle_checksum(payload["data"])
        text = json.dumps(payload, indent=2, ensure_ascii=False)

        try:
            if fmt == ".json.gz":
                with gzip.open(path, "wt", encoding="utf-8") as f:
                    f.write(text)
            elif fmt == ".zip":
                with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                    zf.writestr(ZIP_MEMBER, text)
            else:
                path.write_text(text, encoding="utf-8")
        except OSError as e:
            self.logger.error(f"Failed to write bundle {path}: {e}", exc_info=True)
            if path.exists():
                path.unlink()
            raise ExportError(f"Could not write bundle: {e}", export_format=fmt) from e

        self.logger.info(f"Bundle written: {path} ({path.stat().st_size} bytes)")
        return path

    @log_operation("export_to_file")
    def export_to_file(
        self,
        export_dir: str | Path | None = None,
        filename: str | None = None,
        compress: bool | None = None,
        scope: Literal["full", "domain", "area"] = "full",
        scope_id: str | None = None,
        include_history: bool = True,
    ) -> Path:
        with self._sessions()() as s:
            bundle = api.export_bundle(s, scope=scope, scope_id=scope_id, include_history=include_history)
        return self.write_bundle(bundle, export_dir, filename, compress)

    # -------- reading --------
    def _too_large(self, path: Path, size: int) -> BundleImportError:
        return BundleImportError(
            f"Bundle is {size / 1024 / 1024:.1f} MB; the limit is "
            f"{self.settings.imports.max_bundle_size_mb} MB",
            file_path=str(path),
        )

    def _read_raw(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            raise BundleImportError(f"Bundle file not found: {path}", file_path=str(path))

        fmt = _bundle_format(path)
        limit = self.settings.imports.max_bundle_size_mb * 1024 * 1024
        size = path.stat().st_size
        if size > limit:
            raise self._too_large(path, size)

        # Compressed bundles are limited by their expanded size, not the file size.
        try:
            if fmt == ".json.gz":
                with gzip.open(path, "rb") as f:
                    raw = f.read(limit + 1)
            elif fmt == ".zip":
                with zipfile.ZipFile(path) as zf:
                    if ZIP_MEMBER not in zf.namelist():
                        raise BundleImportError(
                            f"Archive does not contain {ZIP_MEMBER}", file_path=str(path)
                        )
                    declared = zf.getinfo(ZIP_MEMBER).file_size
                    if declared > limit:
                        raise self._too_large(path, declared)
                    with zf.open(ZIP_MEMBER) as member:
                        raw = member.read(limit + 1)
            else:
                raw = path.read_bytes()
            if len(raw) > limit:
                raise self._too_large(path, len(raw))
            data = json.loads(raw.decode("utf-8"))
        except json.JSONDecodeError as e:
            raise BundleImportError(f"Invalid JSON in bundle file: {e}", file_path=str(path)) from e
        except (OSError, zipfile.BadZipFile, UnicodeDecodeError) as e:
            raise BundleImportError(f"Failed to read bundle file: {e}", file_path=str(path)) from e

        if not isinstance(data, dict):
            raise BundleImportError("Bundle root must be a JSON object", file_path=str(path))
        return data

    def _verify_integrity(self, data: dict[str, Any], path: Path) -> None:
        metadata = data.get("metadata") or {}
        stored = metadata.get("checksum")
        if not stored:
            self.logger.warning(f"No checksum in bundle metadata: {path}")
            return

        calculated = bundle_checksum(data.get("data") or {})
        if stored != calculated:
            raise BundleImportError(
                "Bundle integrity check failed. File may be corrupted. "
                f"Expected: {stored}, Got: {calculated}",
                file_path=str(path),
            )

    @log_operation("load_bundle")
    def load_bundle(self, path: str | Path, verify_integrity: bool = True) -> ExportBundle:
        """
        Read and validate a bundle file.

        Raises:
            BundleImportError: If the file is missing, too large, unreadable, of an
                unsupported version, corrupted or structurally invalid
        """
        path = Path(path)
        data = self._read_raw(path)

        version = str(data.get("exportVersion", ""))
        if not self.settings.imports.is_supported_version(version):
            raise BundleImportError(
                f"Unsupported bundle version '{version}'; supported: "
                f"{', '.join(self.settings.imports.supported_versions)}",
                file_path=str(path),
            )
        if verify_integrity:
            self._verify_integrity(data, path)

        return parse_bundle(data, file_path=str(path))

    def verify_bundle(self, path: str | Path) -> dict[str, Any]:
        """
        Check a bundle file without importing it.

        Returns:
            Dictionary with ``valid``, ``errors``, ``warnings``, ``metadata`` and ``statistics``
        """
        path = Path(path)
        result: dict[str, Any] = {
            "valid": False,
            "errors": [],
            "warnings": [],
            "metadata": {},
            "statistics": {},
        }

        try:
            bundle = self.load_bundle(path)
            result["metadata"] = bundle.metadata.model_dump(by_alias=True)
            result["statistics"] = {
                "assessments": len(bundle.data.assessments),
                "ratings": len(bundle.data.ratings),
                "history": len(bundle.data.history),
                "tags": len(bundle.data.tags),
                "attachments": len(bundle.data.attachments),
            }
            if not bundle.metadata.checksum:
                result["warnings"].append("No checksum found in bundle")
            if bundle.data.attachments:
                result["warnings"].append("Attachments are listed but their contents are not imported")
            result["valid"] = True
            self.logger.info(f"Bundle verification successful: {path}")

        except BundleImportError as e:
            result["errors"].append(str(e))
            self.logger.error(f"Bundle verification failed: {e}")

        return result

    def list_bundles(self, bundle_dir: str | Path | None = None) -> list[dict[str, Any]]:
        """Bundle files in a directory, newest export first."""
        bundle_dir = Path(bundle_dir or self.settings.imports.export_directory)
        if not bundle_dir.exists():
            return []

        bundles = []
        for file_path in bundle_dir.iterdir():
            if not file_path.is_file() or not file_path.name.lower().endswith(BUNDLE_EXTENSIONS):
                continue
            info: dict[str, Any] = {
                "filename": file_path.name,
                "path": str(file_path),
                "size": file_path.stat().st_size,
            }
            try:
                data = self._read_raw(file_path)
                metadata = data.get("metadata") or {}
                info.update(
                    {
                        "export_date": data.get("exportDate"),
                        "version": data.get("exportVersion"),
                        "scope": data.get("scope", "full"),
                        "total_assessments": metadata.get("totalAssessments", 0),
                        "total_history": metadata.get("totalHistory", 0),
                    }
                )
            except BundleImportError as e:
                self.logger.warning(f"Failed to read bundle metadata for {file_path}: {e}")
                info.update({"export_date": None, "version": "unknown", "error": str(e)})
            bundles.append(info)

        bundles.sort(key=lambda x: x.get("export_date") or "", reverse=True)
        return bundles

    # -------- importing --------
    @log_operation("import_from_file")
    def import_from_file(
        self,
        path: str | Path,
        dry_run: bool = False,
        progress: ProgressCallback | None = None,
        should_continue: Callable[[], bool] | None = None,
        max_workers: int | None = None,
    ) -> ImportResult:
        bundle = self.load_bundle(path)
        if bundle.data.attachments:
            self.logger.warning(
                f"Bundle lists {len(bundle.data.attachments)} attachments; they are not imported"
            )
        return api.import_bundle(
            self._sessions(),
            bundle,
            progress=progress,
            should_continue=should_continue,
            dry_run=dry_run,
            max_workers=max_workers,
        )


# Convenience functions
def export_bundle_to_file(SessionLocal: sessionmaker, export_dir: str | None = None, **kwargs) -> Path:
    """
    Export the database to a bundle file (convenience function).

    Example:
        >>> path = export_bundle_to_file(SessionLocal, "./exports", compress=False)
    """
    return BundleService(SessionLocal).export_to_file(export_dir, **kwargs)


def import_bundle_from_file(SessionLocal: sessionmaker, path: str, **kwargs) -> ImportResult:
    """
    Merge a bundle file into the database (convenience function).

    Example:
        >>> result = import_bundle_from_file(SessionLocal, "./exports/orbit_full_export.json.gz")
        >>> print(result.imported_as_current, result.imported_as_history)
    """
    return BundleService(SessionLocal).import_from_file(path, **kwargs)
