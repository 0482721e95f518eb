import os
import re
import uuid

_MIME_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/webp": ".webp",
    "video/mp4": ".mp4",
    "audio/mpeg": ".mp3",
    "audio/wav": ".wav",
}


def _ext_from_mime(mime_type: str) -> str:
    return _MIME_EXTENSIONS.get((mime_type or "").lower(), ".bin")


def _safe_stem(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9_-]+", "-", value).strip("-") or "asset"


class LocalMediaStore:
    """Writes generated media under `root_dir` and serves it from `url_prefix`."""

    def __init__(self, root_dir: str, url_prefix: str):
        self.root_dir = root_dir
        self.url_prefix = url_prefix.rstrip("/")

    def save_bytes(self, data: bytes, mime_type: str, stem: str | None = None) -> tuple[str, str]:
        """Persist media bytes; returns (file path, public url)."""
        os.makedirs(self.root_dir, exist_ok=True)

        suffix = uuid.uuid4().hex[:12]
        name = f"{_safe_stem(stem)}-{suffix}" if stem else suffix
        filename = f"{name}{_ext_from_mime(mime_type)}"
        file_path = os.path.join(self.root_dir, filename)

        with open(file_path, "wb") as f:
            f.write(data)

        return file_path, f"{self.url_prefix}/{filename}"
