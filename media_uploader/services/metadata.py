"""Remote folder layout and the metadata.json descriptor for an upload."""

import json
import logging
import uuid
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from media_uploader.services.upload_task import UploadRequest

logger = logging.getLogger(__name__)

METADATA_FILENAME = "metadata.json"


def folder_layout(request: UploadRequest) -> str:
    """Remote folder shared by the metadata file and every data folder.

    Example: ``Season 1/Episode 3/Day 12/B01/A-Cam/``
    """
    return (
        f"{request.season}/{request.episode}/{request.shoot_day}/"
        f"{request.batch}/{request.unit}/"
    )


def metadata_destination(request: UploadRequest) -> str:
    return folder_layout(request) + METADATA_FILENAME


def data_destination(layout: str, folder_type: str, overrides: Mapping[str, str] | None = None) -> str:
    """Remote folder receiving source directories of ``folder_type``."""
    folder = (overrides or {}).get(folder_type) or folder_type
    return f"{layout}{folder.strip('/')}/"


def uploadable_types(request: UploadRequest) -> list[str]:
    """Folder types that produce data uploads.

    When per-file records were supplied, types without records are skipped.
    """
    return [
        folder_type
        for folder_type, dirs in request.source_dirs.items()
        if dirs and (not request.files or request.files.get(folder_type))
    ]


def file_records(request: UploadRequest) -> list[dict[str, Any]]:
    """Flatten per-type file records into the ``files`` list of metadata.json.

    Each entry in ``request.files[type]`` is either a record carrying a
    ``filePath`` or a mapping of names to such records.
    """
    records: list[dict[str, Any]] = []
    for folder_type in uploadable_types(request):
        for item in request.files.get(folder_type, []):
            if "filePath" in item:
                records.append(item)
                continue
            for record in item.values():
                if isinstance(record, dict) and "filePath" in record:
                    records.append(record)
    return records


def build_metadata(request: UploadRequest) -> dict[str, Any]:
    document = dict(request.metadata)
    document["files"] = file_records(request)
    return document


def write_metadata_file(request: UploadRequest, directory: str | Path) -> Path:
    """Write the metadata.json for ``request`` under a unique name.

    Returns:
        Path of the written ``<uuid>_metadata.json`` file
    """
    target_dir = Path(directory)
    target_dir.mkdir(parents=True, exist_ok=True)
    path = target_dir / f"{uuid.uuid4()}_{METADATA_FILENAME}"
    with open(path, "w", encoding="utf-8") as f:
        json.dump(build_metadata(request), f, indent=2, sort_keys=True)
    logger.debug("Wrote metadata file %s", path)
    return path


def remove_metadata_file(path: str | Path) -> bool:
    """Delete a metadata file once it has been uploaded."""
    try:
        Path(path).unlink()
        return True
    except FileNotFoundError:
        return False
    except OSError:
        logger.warning("Failed to remove metadata file: %s", path, exc_info=True)
        return False
