from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class DocumentRoot:
    """Maps URL paths onto files under the directory the web server serves."""

    def __init__(self, root: Path):
        self.root = root.expanduser().resolve()

    def path_for(self, url_path: str) -> Path:
        rel = url_path.split("?", 1)[0].lstrip("/")
        p = (self.root / rel).resolve()
        try:
            p.relative_to(self.root)
        except ValueError:
            raise ValueError(f"path escapes document root: {url_path}") from None
        return p

    def is_writable(self) -> bool:
        return self.root.is_dir() and os.access(self.root, os.W_OK)

    def read_text(self, url_path: str) -> Optional[str]:
        p = self.path_for(url_path)
        if not p.is_file():
            return None
        return p.read_text(encoding="utf-8", errors="replace")

    def ensure_parent(self, path: Path) -> list[Path]:
        """Create missing parent directories; returns the ones created, outermost first."""
        missing: list[Path] = []
        cur = path.parent
        while not cur.exists() and cur != self.root:
            missing.append(cur)
            cur = cur.parent
        missing.reverse()
        for d in missing:
            d.mkdir(exist_ok=True)
        return missing

    def prune_empty_dirs(self, dirs: list[Path]) -> None:
        # innermost first; stop at the first non-empty one
        for d in sorted(dirs, key=lambda x: len(x.parts), reverse=True):
            if d == self.root or not d.is_dir():
                continue
            try:
                d.rmdir()
            except OSError:
                logger.debug("directory not removed (not empty?): %s", d)
                break
