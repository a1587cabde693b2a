"""
Notes: markdown files in a vault directory, mirrored in the notes table.

The vault is the human-readable side. Each note is a markdown file with
YAML frontmatter (title, tags, sources, created, last_verified). The notes
table holds what the engine needs to index and search: title, tags,
one-sentence summary and an indexed flag.

Indexing runs in the background (task type 'index_note'): summarize, pick
tags, link related notes, rewrite the vault file, insert into the tree.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Optional

import yaml

from .errors import NoteNotFound, ValidationError
from .judgment import parse_csv, parse_related
from .store import Store, utc_now
from .task_queue import TaskQueue

if TYPE_CHECKING:
    from .providers.base import Model
    from .tree import TreeIndex

logger = logging.getLogger(__name__)

RELATED_CANDIDATES = 20
DEFAULT_TAG = "uncategorized"
_RELATED_HEADING = "## Related"

SUMMARY_PROMPT = """Summarize the following note in one concise sentence.

Title: {title}

Content:
{content}

Reply with ONLY the summary sentence, nothing else."""

TAGS_PROMPT = """Pick categories/tags for the following note. Prefer reusing existing categories when they fit. Only create a new category if none of the existing ones apply. Keep categories as single lowercase words or short hyphenated phrases.

{existing}Note summary: {summary}

Title: {title}

Reply with ONLY a comma-separated list of tags, nothing else."""

RELATED_PROMPT = """Given this note and a list of other notes, identify which notes are related.

Note: {title}: {summary}

Other notes:
{notes}
Reply with ONLY a comma-separated list of related note titles (exactly as shown above), or "none" if no notes are related. Nothing else."""


def _today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def sanitize_filename(title: str) -> str:
    """Turn a title into a safe file name (no path separators)."""
    name = title
    for ch in "/\\:":
        name = name.replace(ch, "-")
    for ch in '*?"<>|':
        name = name.replace(ch, "")
    name = name.strip().lstrip(".")
    return name or "untitled"


def split_frontmatter(text: str) -> tuple[dict, str]:
    """
    Split markdown into (frontmatter, body).

    Returns an empty dict and the whole text if there is no frontmatter
    or it is not a YAML mapping.
    """
    if text.startswith("---"):
        parts = text.split("---", 2)
        if len(parts) >= 3:
            try:
                frontmatter = yaml.safe_load(parts[1])
            except yaml.YAMLError as e:
                logger.warning("Unparseable frontmatter: %s", e)
                return {}, text
            if isinstance(frontmatter, dict):
                return frontmatter, parts[2].lstrip("\n")
    return {}, text


def render_markdown(frontmatter: dict, body: str) -> str:
    header = yaml.safe_dump(
        frontmatter, sort_keys=False, allow_unicode=True, default_flow_style=None,
    )
    return f"---\n{header}---\n\n{body.rstrip()}\n"


def _strip_related(body: str) -> str:
    """Remove a trailing Related section written by a previous indexing."""
    idx = body.rfind(f"\n{_RELATED_HEADING}\n")
    if idx == -1:
        return body
    return body[:idx].rstrip()


class Vault:
    """Directory of markdown notes addressed by relative path."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, rel_path: str) -> Path:
        path = (self.root / rel_path).resolve()
        if self.root.resolve() not in path.parents:
            raise ValidationError(f"Path escapes the vault: {rel_path}")
        return path

    def path_for(self, title: str) -> str:
        return sanitize_filename(title) + ".md"

    def read(self, rel_path: str) -> str:
        path = self._resolve(rel_path)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise NoteNotFound(f"Vault file not found: {rel_path}") from None

    def write(self, rel_path: str, frontmatter: dict, body: str) -> None:
        path = self._resolve(rel_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(render_markdown(frontmatter, body), encoding="utf-8")

    def update_frontmatter(self, rel_path: str, **fields) -> None:
        frontmatter, body = split_frontmatter(self.read(rel_path))
        frontmatter.update(fields)
        self.write(rel_path, frontmatter, body)


@dataclass
class Note:
    id: int
    path: str
    title: str
    tags: list[str] = field(default_factory=list)
    summary: str = ""
    indexed: bool = False
    created_at: str = ""
    last_verified: str = ""

    @classmethod
    def from_row(cls, row) -> "Note":
        return cls(
            id=row["id"],
            path=row["path"],
            title=row["title"],
            tags=parse_csv(row["tags"]),
            summary=row["summary"],
            indexed=bool(row["indexed"]),
            created_at=row["created_at"],
            last_verified=row["last_verified"],
        )


_NOTE_COLUMNS = "id, path, title, tags, summary, indexed, created_at, last_verified"


class NoteStore:
    """Notes table plus the vault files behind it."""

    def __init__(self, store: Store, vault: Vault, queue: TaskQueue):
        self._store = store
        self.vault = vault
        self._queue = queue

    def add_note(
        self,
        title: str,
        content: str,
        sources: Optional[list[str]] = None,
    ) -> tuple[int, str]:
        """
        Write a note to the vault and queue it for indexing.

        A note with the same file name replaces the previous one and is
        indexed again. Returns (note_id, relative path).
        """
        title = title.strip()
        if not title:
            raise ValidationError("Note title is required")
        rel_path = self.vault.path_for(title)
        today = _today()
        self.vault.write(rel_path, {
            "title": title,
            "tags": [],
            "sources": list(sources or []),
            "created": today,
            "last_verified": today,
        }, content)

        with self._store.transaction() as conn:
            conn.execute("""
                INSERT INTO notes (path, title, tags, summary, indexed, created_at, last_verified)
                VALUES (?, ?, '', '', 0, ?, ?)
                ON CONFLICT(path) DO UPDATE SET
                    title = excluded.title, summary = '', indexed = 0,
                    last_verified = excluded.last_verified
            """, (rel_path, title, utc_now(), today))
            note_id = conn.execute(
                "SELECT id FROM notes WHERE path = ?", (rel_path,)
            ).fetchone()["id"]

        self._queue.enqueue("index_note", str(note_id))
        logger.info("Note added: %d %s", note_id, rel_path)
        return note_id, rel_path

    def fetch_note(self, rel_path: str) -> str:
        """Raw markdown of a vault file."""
        return self.vault.read(rel_path)

    def get_note(self, note_id: int) -> Note:
        row = self._store.fetchone(
            f"SELECT {_NOTE_COLUMNS} FROM notes WHERE id = ?", (note_id,)
        )
        if row is None:
            raise NoteNotFound(f"Note not found: {note_id}")
        return Note.from_row(row)

    def get_note_by_path(self, rel_path: str) -> Note:
        row = self._store.fetchone(
            f"SELECT {_NOTE_COLUMNS} FROM notes WHERE path = ?", (rel_path,)
        )
        if row is None:
            raise NoteNotFound(f"Note not found: {rel_path}")
        return Note.from_row(row)

    def get_notes(self, note_ids) -> list[Note]:
        """Notes for the given ids, ordered by id. Unknown ids are skipped."""
        ids = sorted(set(note_ids))
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        rows = self._store.fetchall(
            f"SELECT {_NOTE_COLUMNS} FROM notes WHERE id IN ({placeholders}) ORDER BY id",
            tuple(ids),
        )
        return [Note.from_row(r) for r in rows]

    def touch_note(self, note_id: int) -> None:
        """Mark a note verified today, in the table and in the vault file."""
        note = self.get_note(note_id)
        today = _today()
        self._store.execute(
            "UPDATE notes SET last_verified = ? WHERE id = ?", (today, note_id)
        )
        self.vault.update_frontmatter(note.path, last_verified=today)
        logger.info("Note touched: %d %s", note_id, note.title)

    def recent_summaries(self, exclude_id: int, limit: int = RELATED_CANDIDATES) -> list[Note]:
        rows = self._store.fetchall(f"""
            SELECT {_NOTE_COLUMNS} FROM notes
            WHERE id != ? AND summary != ''
            ORDER BY id DESC LIMIT ?
        """, (exclude_id, limit))
        return [Note.from_row(r) for r in rows]

    def set_summary(self, note_id: int, summary: str) -> None:
        self._store.execute("UPDATE notes SET summary = ? WHERE id = ?", (summary, note_id))

    def set_tags(self, note_id: int, tags: list[str]) -> None:
        self._store.execute(
            "UPDATE notes SET tags = ? WHERE id = ?", (",".join(tags), note_id)
        )

    def mark_indexed(self, note_id: int) -> None:
        self._store.execute("UPDATE notes SET indexed = 1 WHERE id = ?", (note_id,))

    def counts(self) -> dict[str, int]:
        row = self._store.fetchone(
            "SELECT COUNT(*) AS total, COALESCE(SUM(indexed), 0) AS indexed FROM notes"
        )
        return {"total": row["total"], "indexed": row["indexed"]}


class NoteIndexer:
    """Background semantic indexing of a note."""

    def __init__(self, notes: NoteStore, tree: "TreeIndex", model: "Model"):
        self._notes = notes
        self._tree = tree
        self._model = model

    def index_note(self, note_id: int) -> list[str]:
        """
        Summarize, tag, link and tree-insert a note. Returns its tags.

        Summary and tag failures propagate (the task is retried). A failed
        related-notes lookup only drops the links. Tree insertion runs once
        per tag concurrently; the first insertion error is raised after all
        tags have been attempted.
        """
        note = self._notes.get_note(note_id)
        frontmatter, body = split_frontmatter(self._notes.fetch_note(note.path))
        body = _strip_related(body)

        summary = self._model.generate(
            SUMMARY_PROMPT.format(title=note.title, content=body)
        ).strip()
        self._notes.set_summary(note_id, summary)

        tags = self._pick_tags(note.title, summary)
        related = self._find_related(note, summary)

        self._rewrite_vault_file(note, frontmatter, body, tags, related)
        self._notes.set_tags(note_id, tags)

        errors: list[Exception] = []
        errors_lock = threading.Lock()

        def insert(tag: str) -> None:
            try:
                self._tree.insert_note(note_id, tag, summary)
            except Exception as e:
                logger.error("Tree insertion failed for note %d tag %s: %s", note_id, tag, e)
                with errors_lock:
                    errors.append(e)

        threads = [
            threading.Thread(target=insert, args=(tag,), name=f"factbase-index-{tag}")
            for tag in tags
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        if errors:
            raise errors[0]

        self._notes.mark_indexed(note_id)
        logger.info("Note indexed: %d %s tags=%s", note_id, note.title, ",".join(tags))
        return tags

    def _pick_tags(self, title: str, summary: str) -> list[str]:
        root_labels = self._tree.root_labels()
        existing = ""
        if root_labels:
            existing = (
                "Existing categories in the knowledge base:\n"
                f"{', '.join(root_labels)}\n\n"
            )
        raw = self._model.generate(
            TAGS_PROMPT.format(existing=existing, summary=summary, title=title)
        )
        tags: list[str] = []
        for tag in parse_csv(raw):
            tag = tag.strip("\"'`#*- ").lower()
            if tag and tag not in tags:
                tags.append(tag)
        if not tags:
            logger.warning("No tags parsed for %r, using %s", title, DEFAULT_TAG)
            tags = [DEFAULT_TAG]
        return tags

    def _find_related(self, note: Note, summary: str) -> list[str]:
        recent = self._notes.recent_summaries(note.id)
        if not recent:
            return []
        listing = "".join(f"- {n.title}: {n.summary}\n" for n in recent)
        try:
            raw = self._model.generate(RELATED_PROMPT.format(
                title=note.title, summary=summary, notes=listing,
            ))
        except Exception as e:
            logger.warning("Related-notes lookup failed for %d: %s", note.id, e)
            return []
        known = {n.title for n in recent}
        return [t for t in parse_related(raw) if t in known]

    def _rewrite_vault_file(
        self,
        note: Note,
        frontmatter: dict,
        body: str,
        tags: list[str],
        related: list[str],
    ) -> None:
        today = _today()
        updated = {
            "title": note.title,
            "tags": tags,
            "sources": frontmatter.get("sources") or [],
            "created": frontmatter.get("created") or today,
            "last_verified": frontmatter.get("last_verified") or note.last_verified or today,
        }
        if related:
            links = "\n".join(f"- [[{t}]]" for t in related)
            body = f"{body.rstrip()}\n\n{_RELATED_HEADING}\n\n{links}\n"
        self._notes.vault.write(note.path, updated, body)
