"""Media files saved alongside harvested messages."""

import logging
import re
from pathlib import Path

from harvester.errors import MediaFetchError
from harvester.source import MediaPayload

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9@._-]")


class MediaWriter:
    """
    Writes media payloads to <media_dir>/<message id>.<extension>.
    The directory is created on first use.
    """

    def __init__(self, media_dir: str | Path):
        self.media_dir = Path(media_dir)

    def path_for(self, message_id: str, mime_type: str) -> Path:
        subtype = mime_type.split("/", 1)[-1].split(";", 1)[0].strip() or "bin"
        filename = f"{_UNSAFE_CHARS.sub('_', message_id)}.{_UNSAFE_CHARS.sub('_', subtype)}"
        return self.media_dir / filename

    def save(self, message_id: str, payload: MediaPayload) -> str:
        path = self.path_for(message_id, payload.mime_type)
        try:
            self.media_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(payload.data)
        except OSError as e:
            raise MediaFetchError(f"Could not write media for {message_id}: {e}") from e
        logger.info(f"Media saved: {path.name}")
        return str(path)
