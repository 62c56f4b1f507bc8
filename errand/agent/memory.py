"""Long-term memory and pluggable retrieval.

Layout under the workspace:
1. Long-term notes  — memory/MEMORY.md, curated facts worth keeping
2. Daily notes      — memory/YYYY-MM-DD.md, appended through the day
3. Short-term       — per-session JSONL history (managed by SessionManager)

What ends up in the agent's context is decided by a MemoryRetriever. The
default KeywordRetriever ranks paragraphs by keyword overlap with the
incoming message; any object with a matching ``query`` method can replace it.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Protocol, runtime_checkable

from loguru import logger

from errand.utils.helpers import ensure_dir

_WORD = re.compile(r"[a-z0-9][a-z0-9_'-]+")
_STOPWORDS = frozenset(
    "the and for are but not you all any can had her was one our out day get has him his how "
    "its may new now old see two who did yes let put say she too use what when with this that "
    "from have they will your about there their would which could should into than them then".split()
)


@dataclass(frozen=True)
class MemoryExcerpt:
    """One ranked piece of long-term memory."""

    text: str
    source: str  # File the excerpt came from
    score: float


@runtime_checkable
class MemoryRetriever(Protocol):
    """Selects memory excerpts relevant to a topic, best first."""

    def query(self, session_id: str, topic: str, limit: int = 5) -> list[MemoryExcerpt]:
        ...


class MemoryStore:
    """Manages the workspace memory files."""

    def __init__(self, workspace: Path):
        self.memory_dir = ensure_dir(Path(workspace) / "memory")
        self.memory_file = self.memory_dir / "MEMORY.md"

    # ── Long-term ────────────────────────────────────────────

    def read_long_term(self) -> str:
        """Read MEMORY.md."""
        if self.memory_file.exists():
            return self.memory_file.read_text(encoding="utf-8")
        return ""

    def write_long_term(self, content: str) -> None:
        """Replace MEMORY.md."""
        self.memory_file.write_text(content, encoding="utf-8")

    def append_long_term(self, entry: str) -> None:
        """Append a timestamped entry to MEMORY.md."""
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M")
        with open(self.memory_file, "a", encoding="utf-8") as f:
            f.write(f"\n[{timestamp}] {entry.strip()}\n")
        logger.info("Long-term memory saved: {}", entry[:80])

    # ── Daily notes ──────────────────────────────────────────

    def _daily_path(self, d: date | None = None) -> Path:
        d = d or date.today()
        return self.memory_dir / f"{d.isoformat()}.md"

    def read_today(self) -> str:
        path = self._daily_path()
        return path.read_text(encoding="utf-8") if path.exists() else ""

    def append_today(self, content: str) -> None:
        """Append to today's notes, creating the file with a date header."""
        path = self._daily_path()
        if path.exists():
            text = path.read_text(encoding="utf-8") + "\n" + content
        else:
            text = f"# {date.today().isoformat()}\n\n{content}"
        path.write_text(text, encoding="utf-8")

    def get_recent_notes(self, days: int = 7) -> list[Path]:
        """Daily note files, newest first."""
        notes = [p for p in self.memory_dir.glob("????-??-??.md")]
        return sorted(notes, reverse=True)[:days]

    def iter_documents(self, days: int = 7) -> list[tuple[str, str]]:
        """(source, text) pairs for retrieval: MEMORY.md first, then recent notes."""
        docs = []
        if long_term := self.read_long_term():
            docs.append((self.memory_file.name, long_term))
        for path in self.get_recent_notes(days):
            docs.append((path.name, path.read_text(encoding="utf-8")))
        return docs


def _terms(text: str) -> set[str]:
    return {w for w in _WORD.findall(text.lower()) if w not in _STOPWORDS}


class KeywordRetriever:
    """Ranks memory paragraphs by keyword overlap with the topic."""

    def __init__(self, store: MemoryStore, days: int = 7):
        self.store = store
        self.days = days

    def query(self, session_id: str, topic: str, limit: int = 5) -> list[MemoryExcerpt]:
        wanted = _terms(topic)
        if not wanted or limit <= 0:
            return []

        scored = []
        for source, text in self.store.iter_documents(self.days):
            for para in re.split(r"\n\s*\n", text):
                para = para.strip()
                if not para or para.startswith("# "):
                    continue
                have = _terms(para)
                overlap = len(wanted & have)
                if overlap:
                    # Normalize by topic size so short topics are not penalized
                    scored.append(MemoryExcerpt(text=para, source=source, score=overlap / len(wanted)))

        scored.sort(key=lambda e: e.score, reverse=True)
        return scored[:limit]
