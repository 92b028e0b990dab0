"""
PATCHLOOP Repository Index — The Navigator

Keeps one summary per tracked file, keyed by path, and only re-summarizes
a file when its content hash changes. The Context Gatherer ranks these
entries against a goal; definition lookups locate declaration sites with
per-language patterns.

Persistence: <state_dir>/index.json. A missing or corrupt file means
"rebuild from scratch", never an error.
"""

from __future__ import annotations

import hashlib
import json
import os
import re
import subprocess
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Protocol

from loguru import logger

# ---------------------------------------------------------------------------
# Constants & Configuration
# ---------------------------------------------------------------------------

INDEX_SCHEMA_VERSION = 2

SKIP_DIRS = {
    ".git", ".patchloop", ".context", ".venv", "venv", "env",
    "node_modules", "target", "dist", "build", "__pycache__",
    ".tox", ".mypy_cache", ".pytest_cache", ".ruff_cache",
    ".next", ".nuxt", "coverage", ".cargo", "vendor",
}

CODE_EXTENSIONS = {
    ".rs", ".py", ".ts", ".tsx", ".js", ".jsx", ".go", ".java",
    ".c", ".h", ".cc", ".cpp", ".hpp", ".cs", ".rb", ".kt", ".swift",
    ".toml", ".md", ".yaml", ".yml", ".json",
}

KEY_FILES = {
    "Cargo.toml", "package.json", "pyproject.toml", "setup.py",
    "go.mod", "Makefile", "Dockerfile", "README.md", "pom.xml",
    "build.gradle",
}

# Declaration patterns; `{name}` is substituted for definition lookups.
_DECL_TEMPLATES = {
    ".py": [r"^\s*(?:async\s+)?def\s+({name})\b", r"^\s*class\s+({name})\b", r"^({name})[ \t]*(?::[^=\n]*)?=(?!=)"],
    ".rs": [r"^\s*(?:pub(?:\([^)]*\))?\s+)?(?:async\s+)?(?:unsafe\s+)?(?:fn|struct|enum|trait|union|type|mod|const|static)\s+({name})\b"],
    ".ts": [r"^\s*(?:export\s+)?(?:default\s+)?(?:abstract\s+)?(?:class|interface|type|function|const|let|enum)\s+({name})\b"],
    ".go": [r"^\s*func\s+(?:\([^)]*\)\s*)?({name})\b", r"^\s*type\s+({name})\b"],
    ".java": [r"^\s*(?:(?:public|private|protected|static|final|abstract)\s+)*(?:class|interface|enum|record)\s+({name})\b",
              r"^\s*(?:(?:public|private|protected|static|final|abstract|synchronized)\s+)+[\w<>\[\], ]+[ \t]+({name})[ \t]*\("],
    ".c": [r"^[A-Za-z_][\w \t\*]*?\b({name})[ \t]*\([^;\n]*$", r"^\s*(?:typedef\s+)?(?:struct|enum|union)\s+({name})\b", r"^\s*#define\s+({name})\b"],
}
_DECL_TEMPLATES[".tsx"] = _DECL_TEMPLATES[".ts"]
_DECL_TEMPLATES[".js"] = _DECL_TEMPLATES[".ts"]
_DECL_TEMPLATES[".jsx"] = _DECL_TEMPLATES[".ts"]
_DECL_TEMPLATES[".kt"] = _DECL_TEMPLATES[".java"]
_DECL_TEMPLATES[".cs"] = _DECL_TEMPLATES[".java"]
for _ext in (".h", ".cc", ".cpp", ".hpp"):
    _DECL_TEMPLATES[_ext] = _DECL_TEMPLATES[".c"]

_IDENT = r"[A-Za-z_][A-Za-z0-9_]*"

SYMBOL_PATTERNS = {
    ext: [re.compile(t.format(name=_IDENT), re.MULTILINE) for t in templates]
    for ext, templates in _DECL_TEMPLATES.items()
}

IMPORT_PATTERNS = {
    ".py": re.compile(r"^(?:from|import)\s+([a-zA-Z0-9_\.]+)", re.MULTILINE),
    ".rs": re.compile(r"^\s*use\s+([a-zA-Z0-9_:]+)", re.MULTILINE),
    ".ts": re.compile(r"""^\s*import\s+.*?from\s+['"]([^'"]+)['"]""", re.MULTILINE),
    ".go": re.compile(r'^\s*(?:import\s+)?"([^"]+)"', re.MULTILINE),
}

TOKEN_PATTERN = re.compile(r"[A-Za-z0-9]+")


def tokenize(text: str) -> list[str]:
    """Lowercase alphanumeric terms; snake_case and CamelCase are split."""
    spaced = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", text)
    return [m.group(0).lower() for m in TOKEN_PATTERN.finditer(spaced)]


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


# ---------------------------------------------------------------------------
# Data Models
# ---------------------------------------------------------------------------

@dataclass
class IndexEntry:
    path: str
    summary: str
    content_hash: str
    symbols: List[str] = field(default_factory=list)
    stale: bool = False


@dataclass(frozen=True)
class IndexHit:
    entry: IndexEntry
    score: float
    line: int | None = None
    matched: tuple[str, ...] = ()


class Summarizer(Protocol):
    """Produces a short summary for one file."""

    def summarize(self, path: str, content: str) -> str:
        ...


class SymbolSummarizer:
    """Deterministic, offline summary: declared symbols plus imports."""

    def summarize(self, path: str, content: str) -> str:
        ext = Path(path).suffix
        symbols = harvest_symbols(ext, content)
        imports = harvest_imports(ext, content)
        lines = content.count("\n") + (1 if content and not content.endswith("\n") else 0)
        parts = [f"{ext.lstrip('.') or 'file'} ({lines} lines)"]
        if symbols:
            parts.append("defines " + ", ".join(symbols[:25]))
        if imports:
            parts.append("imports " + ", ".join(imports[:15]))
        return "; ".join(parts)


def harvest_symbols(ext: str, content: str) -> list[str]:
    found: set[str] = set()
    for pattern in SYMBOL_PATTERNS.get(ext, []):
        found.update(pattern.findall(content))
    return sorted(found)


def harvest_imports(ext: str, content: str) -> list[str]:
    pattern = IMPORT_PATTERNS.get(ext) or IMPORT_PATTERNS.get(".ts" if ext in (".js", ".jsx", ".tsx") else "")
    if not pattern:
        return []
    return sorted(set(pattern.findall(content)))


# ---------------------------------------------------------------------------
# Repository Index
# ---------------------------------------------------------------------------

class RepoIndex:
    """
    Persistent per-file summaries for one checkout.

    Owned exclusively by a Session; never shared between sessions.
    """

    def __init__(
        self,
        root: Path,
        state_dir: str = ".patchloop",
        summarizer: Summarizer | None = None,
        ignore_dirs: Iterable[str] = (),
        max_file_bytes: int = 512_000,
    ):
        self.root = root.resolve()
        self.state_dir = state_dir
        self.summarizer = summarizer or SymbolSummarizer()
        self.skip_dirs = SKIP_DIRS | {state_dir.strip("/").split("/")[0]} | set(ignore_dirs)
        self.max_file_bytes = max_file_bytes
        self.entries: Dict[str, IndexEntry] = {}

    # -- persistence ------------------------------------------------------

    @property
    def index_path(self) -> Path:
        return self.root / self.state_dir / "index.json"

    def load(self) -> bool:
        """Load persisted entries. Returns False when a rebuild is needed."""
        path = self.index_path
        if not path.exists():
            return False
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            if raw.get("version") != INDEX_SCHEMA_VERSION:
                logger.info("[INDEX] Schema version changed — rebuilding")
                return False
            self.entries = {
                item["path"]: IndexEntry(**item) for item in raw.get("entries", [])
            }
        except (OSError, ValueError, TypeError, KeyError, AttributeError) as e:
            logger.warning(f"[INDEX] Could not load {path}: {e} — rebuilding")
            self.entries = {}
            return False
        return True

    def save(self) -> None:
        path = self.index_path
        payload = {
            "version": INDEX_SCHEMA_VERSION,
            "entries": [asdict(self.entries[p]) for p in sorted(self.entries)],
        }
        tmp = path.with_suffix(".json.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=1)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except OSError as e:
            logger.warning(f"[INDEX] Could not persist index: {e}")

    def open(self) -> "RepoIndex":
        """Load from disk, falling back to a full build; then resync."""
        if self.load():
            self.refresh()
        else:
            self.build()
        return self

    # -- discovery --------------------------------------------------------

    def tracked_files(self) -> list[str]:
        """Deterministic list of indexable paths (posix, relative)."""
        try:
            raw_files = subprocess.run(
                ["git", "ls-files", "--cached", "--others", "--exclude-standard"],
                cwd=self.root, capture_output=True, text=True, timeout=30, check=True,
            ).stdout.splitlines()
        except (subprocess.CalledProcessError, FileNotFoundError, subprocess.TimeoutExpired):
            logger.debug("[INDEX] git unavailable, falling back to manual walk.")
            raw_files = [
                p.relative_to(self.root).as_posix()
                for p in self.root.rglob("*") if p.is_file()
            ]

        files = {
            rel_path for rel_path in raw_files
            if self.is_indexable(rel_path) and (self.root / rel_path).is_file()
        }
        return sorted(files)

    def is_indexable(self, rel_path: str) -> bool:
        """Path passes the ignore list and the extension / key-file allow list."""
        parts = rel_path.split("/")
        if any(part in self.skip_dirs for part in parts[:-1]):
            return False
        name = parts[-1]
        return Path(name).suffix in CODE_EXTENSIONS or name in KEY_FILES

    # -- build / update ---------------------------------------------------

    def build(self, root_dir: Path | None = None) -> "RepoIndex":
        """Scan every tracked file and summarize it from scratch."""
        if root_dir is not None:
            self.root = root_dir.resolve()
        self.entries = {}
        for rel_path in self.tracked_files():
            self._index_one(rel_path)
        logger.info(f"[INDEX] Built index: {len(self.entries)} files.")
        self.save()
        return self

    def update(self, changed_paths: Iterable[str]) -> list[str]:
        """
        Re-summarize only entries whose content hash changed.
        Returns the paths whose entries were added, changed, or dropped.
        """
        changed: list[str] = []
        for rel_path in sorted(set(changed_paths)):
            full = self.root / rel_path
            if not full.exists():
                if self.entries.pop(rel_path, None) is not None:
                    logger.debug(f"[INDEX] Dropped deleted file {rel_path}")
                    changed.append(rel_path)
                continue
            if not self.is_indexable(rel_path):
                continue
            if self._index_one(rel_path):
                changed.append(rel_path)
        if changed:
            self.save()
        return changed

    def refresh(self) -> list[str]:
        """Detect external edits (new, changed, deleted files) and update."""
        current = set(self.tracked_files())
        candidates: set[str] = set()
        untracked: list[str] = []

        for rel_path in set(self.entries) - current:
            if (self.root / rel_path).exists():
                # Still on disk but no longer tracked (e.g. newly ignored).
                del self.entries[rel_path]
                untracked.append(rel_path)
            else:
                candidates.add(rel_path)

        for rel_path in current:
            entry = self.entries.get(rel_path)
            if entry is None or entry.stale:
                candidates.add(rel_path)
                continue
            digest = self._hash_file(rel_path)
            if digest is None or digest != entry.content_hash:
                candidates.add(rel_path)

        changed = self.update(candidates)
        if untracked and not changed:
            self.save()
        changed = sorted(set(changed) | set(untracked))
        if changed:
            logger.info(f"[INDEX] Resynced {len(changed)} files")
        return changed

    def _hash_file(self, rel_path: str) -> str | None:
        try:
            return content_hash((self.root / rel_path).read_bytes())
        except OSError:
            return None

    def _index_one(self, rel_path: str) -> bool:
        """(Re)index one path. Returns True when its entry changed."""
        full = self.root / rel_path
        existing = self.entries.get(rel_path)
        try:
            data = full.read_bytes()
        except OSError as e:
            logger.warning(f"[INDEX] Unreadable {rel_path}: {e} — marked stale")
            if existing is None:
                self.entries[rel_path] = IndexEntry(path=rel_path, summary="", content_hash="", stale=True)
                return True
            if existing.stale:
                return False
            existing.stale = True
            return True

        digest = content_hash(data)
        if existing and not existing.stale and existing.content_hash == digest:
            return False

        if len(data) > self.max_file_bytes:
            text = data[: self.max_file_bytes].decode("utf-8", errors="ignore")
        else:
            text = data.decode("utf-8", errors="ignore")

        ext = full.suffix
        symbols = harvest_symbols(ext, text)
        try:
            summary = self.summarizer.summarize(rel_path, text)
        except Exception as e:
            logger.warning(f"[INDEX] Summarizer failed for {rel_path}: {e} — using symbol summary")
            summary = SymbolSummarizer().summarize(rel_path, text)

        self.entries[rel_path] = IndexEntry(
            path=rel_path,
            summary=summary.strip(),
            content_hash=digest,
            symbols=symbols,
        )
        return True

    # -- queries ----------------------------------------------------------

    def get(self, path: str) -> IndexEntry | None:
        return self.entries.get(path)

    def live_entries(self) -> list[IndexEntry]:
        return [self.entries[p] for p in sorted(self.entries) if not self.entries[p].stale]

    def lookup(self, query: str, mode: str = "keyword", limit: int | None = None) -> list[IndexHit]:
        """
        keyword:    rank entries by term overlap with path, symbols, summary.
        definition: find declaration sites of the symbol named by `query`.
        """
        if mode == "definition":
            hits = self._definitions(query.strip())
        elif mode == "keyword":
            hits = self._keyword(query)
        else:
            raise ValueError(f"Unknown lookup mode: {mode!r}")
        return hits[:limit] if limit is not None else hits

    def _keyword(self, query: str) -> list[IndexHit]:
        terms = sorted(set(tokenize(query)))
        if not terms:
            return []
        hits = []
        for entry in self.live_entries():
            path_terms = set(tokenize(entry.path))
            symbol_terms = set(t for s in entry.symbols for t in tokenize(s))
            summary_terms = set(tokenize(entry.summary))
            score = 0.0
            matched = []
            for term in terms:
                weight = 0.0
                if term in path_terms:
                    weight += 3.0
                if term in symbol_terms:
                    weight += 2.0
                if term in summary_terms:
                    weight += 1.0
                if weight:
                    matched.append(term)
                    score += weight
            if score > 0:
                hits.append(IndexHit(entry=entry, score=score, matched=tuple(matched)))
        hits.sort(key=lambda h: (-h.score, h.entry.path))
        return hits

    def _definitions(self, symbol: str) -> list[IndexHit]:
        if not re.fullmatch(_IDENT, symbol):
            return []
        hits = []
        compiled: dict[str, list[re.Pattern]] = {}
        for entry in self.live_entries():
            ext = Path(entry.path).suffix
            templates = _DECL_TEMPLATES.get(ext)
            if not templates:
                continue
            if ext not in compiled:
                compiled[ext] = [
                    re.compile(t.format(name=re.escape(symbol)), re.MULTILINE) for t in templates
                ]
            try:
                text = (self.root / entry.path).read_text(encoding="utf-8", errors="ignore")
            except OSError as e:
                logger.debug(f"[INDEX] Definition scan skipped {entry.path}: {e}")
                continue
            for pattern in compiled[ext]:
                for match in pattern.finditer(text):
                    line = text.count("\n", 0, match.start()) + 1
                    hits.append(IndexHit(entry=entry, score=10.0, line=line, matched=(symbol,)))
        hits.sort(key=lambda h: (h.entry.path, h.line or 0))
        return hits

    def to_agent_context(self, max_files: int = 200) -> str:
        """Compact route map of the repository for planners."""
        parts = ["=== REPO ROUTE MAP ==="]
        entries = self.live_entries()
        for entry in entries[:max_files]:
            parts.append(f"  - {entry.path}: {entry.summary[:160]}")
        if len(entries) > max_files:
            parts.append(f"... and {len(entries) - max_files} more files.")
        return "\n".join(parts)

    def fingerprint(self) -> str:
        """Hash of all entries; equal fingerprints mean content-identical indexes."""
        h = hashlib.sha256()
        for path in sorted(self.entries):
            e = self.entries[path]
            h.update(json.dumps(asdict(e), sort_keys=True).encode())
        return h.hexdigest()
