import logging
import tempfile
from pathlib import Path
from typing import Dict, Optional

from PIL import Image, UnidentifiedImageError

from common import config
from common.convert import make_thumbnail

logger = logging.getLogger(__name__)


class PreviewStore:
    """
    Thumbnail files for queued jobs, keyed by job id.

    Each preview is deleted exactly once: release() forgets the entry before
    unlinking, so a second release for the same id does nothing.
    """

    def __init__(self, directory: Optional[Path] = None, size: int = config.PREVIEW_SIZE):
        self._owns_dir = directory is None
        self.directory = Path(directory) if directory else Path(tempfile.mkdtemp(prefix="cybermorph-previews-"))
        self.directory.mkdir(parents=True, exist_ok=True)
        self.size = size
        self._live: Dict[str, Path] = {}

    def __len__(self) -> int:
        return len(self._live)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._live

    def allocate(self, job_id: str, data: bytes) -> Optional[Path]:
        if job_id in self._live:
            return self._live[job_id]
        try:
            thumb = make_thumbnail(data, self.size)
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
            # Not fatal: the job still converts, it just has no preview
            logger.warning(f"No preview for job {job_id}: {e}")
            return None

        tmp = tempfile.NamedTemporaryFile(
            delete=False, dir=self.directory, prefix=f"{job_id}-", suffix=".png"
        )
        with tmp:
            tmp.write(thumb)
        path = Path(tmp.name)
        self._live[job_id] = path
        return path

    def release(self, job_id: str) -> bool:
        path = self._live.pop(job_id, None)
        if path is None:
            return False
        path.unlink(missing_ok=True)
        return True

    def close(self) -> None:
        for job_id in list(self._live):
            self.release(job_id)
        if self._owns_dir:
            try:
                self.directory.rmdir()
            except OSError as e:
                logger.warning(f"Could not remove preview dir {self.directory}: {e}")
