import logging
import time
from pathlib import Path

from relaybot.formatting import format_bytes

logger = logging.getLogger(__name__)


class TempDir:
    """Shared scratch directory for in-flight artifacts."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def ensure(self) -> Path:
        self.path.mkdir(parents=True, exist_ok=True)
        return self.path

    def _entries(self) -> list[tuple[Path, float, int]]:
        entries = []
        if not self.path.exists():
            return entries
        for child in self.path.iterdir():
            try:
                stat = child.stat()
            except OSError:
                continue
            if child.is_file():
                entries.append((child, stat.st_mtime, stat.st_size))
        return entries

    def remove(self, file_path: Path | None) -> bool:
        if file_path is None:
            return False
        try:
            Path(file_path).unlink()
            logger.debug("Cleaned up: %s", file_path)
            return True
        except FileNotFoundError:
            return False
        except OSError as err:
            logger.warning("Cleanup failed for %s: %s", file_path, err)
            return False

    def remove_matching(self, stem: str) -> int:
        removed = 0
        if not self.path.exists():
            return removed
        for candidate in self.path.glob(f"{stem}*"):
            if candidate.is_file() and self.remove(candidate):
                removed += 1
        return removed

    def cleanup_older_than(self, max_age_seconds: float) -> tuple[int, int]:
        now = time.time()
        cleaned = 0
        freed = 0
        for file_path, mtime, size in self._entries():
            if now - mtime < max_age_seconds:
                continue
            if self.remove(file_path):
                cleaned += 1
                freed += size
        if cleaned:
            logger.info("Cleaned up %s temp file(s) (%s freed)", cleaned, format_bytes(freed))
        return cleaned, freed

    def delete_all(self) -> tuple[int, int]:
        return self.cleanup_older_than(0)

    def total_size(self) -> int:
        return sum(size for _, _, size in self._entries())

    def trim_to_size(self, max_bytes: int) -> tuple[int, int]:
        """Delete oldest files until the directory drops under 70% of ``max_bytes``."""
        entries = self._entries()
        total = sum(size for _, _, size in entries)
        if total <= max_bytes:
            return 0, 0

        logger.warning("Temp dir too large: %s / %s", format_bytes(total), format_bytes(max_bytes))
        target = max_bytes * 0.7
        deleted = 0
        freed = 0
        for file_path, _, size in sorted(entries, key=lambda entry: entry[1]):
            if not self.remove(file_path):
                continue
            total -= size
            freed += size
            deleted += 1
            if total < target:
                break
        logger.info("Aggressive cleanup: %s file(s) deleted (%s freed)", deleted, format_bytes(freed))
        return deleted, freed
