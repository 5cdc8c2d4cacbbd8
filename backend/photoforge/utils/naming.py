import re
from datetime import datetime
from pathlib import PurePosixPath

_UNSAFE_CHARS = re.compile(r"[^\w\-.]", re.ASCII)
_UNDERSCORE_RUNS = re.compile(r"_{2,}")


def sanitize_filename(filename: str, fallback: str = "image.png") -> str:
    cleaned = _UNDERSCORE_RUNS.sub("_", _UNSAFE_CHARS.sub("_", filename or ""))
    return cleaned if cleaned.strip("._") else fallback


def upload_relpath(owner_id: str, asset_id: str, filename: str, now: datetime | None = None) -> PurePosixPath:
    """``<owner>/<yyyy>/<mm>/<dd>/<id prefix>_<safe name>``, relative to the uploads dir."""
    day = now or datetime.utcnow()
    return PurePosixPath(
        sanitize_filename(owner_id, fallback="anonymous"),
        f"{day:%Y}",
        f"{day:%m}",
        f"{day:%d}",
        f"{asset_id[:8]}_{sanitize_filename(filename, fallback='upload.png')}",
    )
