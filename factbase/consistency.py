"""
Consistency engine: statements, duplicate/contradiction detection, issues.

Statements enter as 'pending' without an embedding. A promotion cycle
embeds each pending statement, compares it against the store with the
configured duplicate detector, and either promotes it to 'active' (search
visible) or opens an issue for every conflicting pair and leaves it
pending until a reviewer resolves the issue.

Model failures never fail a foreground call: an unembedded statement just
stays pending and is picked up again on the next cycle.
"""

import json
import logging
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Optional

from .errors import (
    InvalidResolution,
    IssueNotFound,
    IssueNotOpen,
    ModelUnavailable,
    StatementNotFound,
    StatementTooLarge,
)
from .judgment import is_yes
from .providers.base import Model
from .similarity import blob_to_embedding, cosine_similarity, embedding_to_blob
from .store import Store, utc_now
from .task_queue import TaskQueue

logger = logging.getLogger(__name__)

MAX_STATEMENT_SIZE = 2000
TITLE_MAX = 120
QUERY_CONTENT_MAX = 200

DEFAULT_DUPLICATE_THRESHOLD = 0.9
DEFAULT_SIMILARITY_THRESHOLD = 0.3
DEFAULT_MAX_RESULTS = 10
DEFAULT_JUDGMENT_TOP_K = 5

PROMOTE_PRIORITY = 5
CONTRADICTION_PRIORITY = 1

RESOLUTION_ACTIONS = ("keep_a", "keep_b", "keep_both", "delete_both")

CONTRADICTION_PROMPT = """Do these two statements contradict each other? Answer ONLY "yes" or "no", followed by a brief explanation.

Statement A:
{a}

Statement B:
{b}"""


def derive_title(text: str) -> str:
    """
    Short title from statement text.

    The first sentence (up to the first '.' inclusive, or the first
    newline) when that boundary falls within the first 120 characters;
    otherwise the first 120 characters followed by an ellipsis.
    """
    s = text.strip()
    if not s:
        return ""
    cut = -1
    dot = s.find(".")
    if 0 <= dot < TITLE_MAX:
        cut = dot + 1
    nl = s.find("\n")
    if 0 <= nl < TITLE_MAX and (cut < 0 or nl < cut):
        cut = nl
    if cut > 0:
        return s[:cut].strip()
    if len(s) <= TITLE_MAX:
        return s
    return s[:TITLE_MAX] + "…"


def pair_key(a: str, b: str) -> str:
    """Order-independent key for a pair of statement ids."""
    lo, hi = sorted((a, b))
    return f"{lo}|{hi}"


@dataclass
class Statement:
    id: str
    title: str
    content: str
    source: str
    source_type: str
    status: str
    model: Optional[str]
    created_at: str
    last_verified: str

    @classmethod
    def from_row(cls, row) -> "Statement":
        return cls(
            id=row["id"],
            title=row["title"],
            content=row["content"],
            source=row["source"],
            source_type=row["source_type"],
            status=row["status"],
            model=row["model"],
            created_at=row["created_at"],
            last_verified=row["last_verified"],
        )


@dataclass
class Issue:
    """A detected conflict between two statements, with both inlined."""
    id: str
    type: str
    status: str
    statement_a: str
    statement_b: str
    score: float
    explanation: str
    created_at: str
    resolved_at: Optional[str] = None
    resolution: Optional[str] = None
    content_a: str = ""
    content_b: str = ""
    source_a: str = ""
    source_b: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class QueryResult:
    id: str
    content: str
    source: str
    score: float
    last_verified: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class AddResult:
    id: str
    title: str


@dataclass
class Conflict:
    """A candidate that blocks promotion of the statement under review."""
    other_id: str
    score: float
    type: str = "duplicate"
    explanation: str = ""


@dataclass
class Detection:
    conflicts: list[Conflict] = field(default_factory=list)
    # False when some candidate could not be judged (model failure)
    complete: bool = True


@dataclass
class CycleResult:
    """Outcome of one promotion cycle."""
    promoted: list[str] = field(default_factory=list)
    flagged: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.promoted) + len(self.flagged) + len(self.deferred)


# -----------------------------------------------------------------------------
# Duplicate detectors
# -----------------------------------------------------------------------------

class MathDuplicateDetector:
    """
    Embedding-only detector.

    Every other non-deleted statement embedded with the current model whose
    cosine similarity reaches the threshold is a duplicate conflict.
    Pending candidates are included so two pending near-duplicates catch
    each other.
    """

    name = "math"

    def __init__(self, engine: "ConsistencyEngine", threshold: float):
        self._engine = engine
        self.threshold = threshold

    def detect(self, statement_id: str, content: str, embedding: list[float]) -> Detection:
        result = Detection()
        for cand_id, _content, cand_emb in self._engine._candidates(
            statement_id, ("pending", "active"),
        ):
            score = cosine_similarity(embedding, cand_emb)
            if score < self.threshold:
                continue
            if self._engine._pair_status(statement_id, cand_id) == "resolved":
                continue
            result.conflicts.append(Conflict(cand_id, score, "duplicate"))
        return result


class JudgmentDuplicateDetector:
    """
    Model-judged detector.

    The top-K most similar active statements at or above the threshold are
    each put to the model as a contradiction question. A reply starting
    with "yes" is a contradiction conflict carrying the reply as
    explanation. A failed judgment leaves the detection incomplete so the
    statement is not promoted on this cycle.
    """

    name = "judgment"

    def __init__(self, engine: "ConsistencyEngine", threshold: float, top_k: int):
        self._engine = engine
        self.threshold = threshold
        self.top_k = top_k

    def detect(self, statement_id: str, content: str, embedding: list[float]) -> Detection:
        scored = []
        for cand_id, cand_content, cand_emb in self._engine._candidates(
            statement_id, ("active",),
        ):
            score = cosine_similarity(embedding, cand_emb)
            if score >= self.threshold:
                scored.append((score, cand_id, cand_content))
        scored.sort(key=lambda s: s[0], reverse=True)

        result = Detection()
        for score, cand_id, cand_content in scored[:self.top_k]:
            existing = self._engine._pair_status(statement_id, cand_id)
            if existing == "resolved":
                continue
            if existing == "open":
                result.conflicts.append(Conflict(cand_id, score, "contradiction"))
                continue
            try:
                reply = self._engine._generate(
                    CONTRADICTION_PROMPT.format(a=content, b=cand_content),
                    operation="contradiction_check",
                    target_id=statement_id,
                )
            except Exception as e:
                logger.warning(
                    "Contradiction judgment failed for %s vs %s: %s",
                    statement_id, cand_id, e,
                )
                result.complete = False
                continue
            if is_yes(reply):
                result.conflicts.append(
                    Conflict(cand_id, score, "contradiction", reply.strip())
                )
        return result


DETECTORS = {
    MathDuplicateDetector.name: MathDuplicateDetector,
    JudgmentDuplicateDetector.name: JudgmentDuplicateDetector,
}


# -----------------------------------------------------------------------------
# Engine
# -----------------------------------------------------------------------------

class ConsistencyEngine:
    """
    Owns the statements and issues tables.

    Example:
        engine = ConsistencyEngine(store, model, queue)
        added = engine.add_statement("The sky is blue.")
        engine.process_pending()
        engine.query("what colour is the sky")
    """

    def __init__(
        self,
        store: Store,
        model: Model,
        queue: TaskQueue,
        *,
        embedding_model: Optional[str] = None,
        duplicate_strategy: str = "math",
        duplicate_threshold: float = DEFAULT_DUPLICATE_THRESHOLD,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        max_results: int = DEFAULT_MAX_RESULTS,
        judgment_top_k: int = DEFAULT_JUDGMENT_TOP_K,
    ):
        """
        Args:
            store: Shared SQLite store
            model: Embedding and judgment backend
            queue: Task queue receiving background hints
            embedding_model: Identifier stored with embeddings (default: model.name)
            duplicate_strategy: "math" or "judgment"
            duplicate_threshold: Similarity at which two statements conflict
            similarity_threshold: Minimum score for query results
            max_results: Cap on query results
            judgment_top_k: Candidates judged per statement (judgment strategy)
        """
        if duplicate_strategy not in DETECTORS:
            raise ValueError(
                f"Unknown duplicate strategy '{duplicate_strategy}'. "
                f"Available: {', '.join(DETECTORS)}"
            )
        self._store = store
        self._model = model
        self._queue = queue
        self.embedding_model = embedding_model or getattr(model, "name", "") or "default"
        self.similarity_threshold = similarity_threshold
        self.max_results = max_results
        self.judgment_top_k = judgment_top_k
        if duplicate_strategy == "judgment":
            self.detector = JudgmentDuplicateDetector(self, duplicate_threshold, judgment_top_k)
        else:
            self.detector = MathDuplicateDetector(self, duplicate_threshold)
        # Serializes promotion cycles (worker thread vs. foreground `work`)
        self._cycle_lock = threading.Lock()

    @property
    def strategy(self) -> str:
        return self.detector.name

    # -------------------------------------------------------------------------
    # Statements
    # -------------------------------------------------------------------------

    def add_statement(
        self,
        text: str,
        source: str = "",
        source_type: str = "manual",
    ) -> AddResult:
        """
        Store a new pending statement and hint the promotion worker.

        Raises:
            StatementTooLarge: text exceeds MAX_STATEMENT_SIZE characters
        """
        if len(text) > MAX_STATEMENT_SIZE:
            raise StatementTooLarge(
                f"Statement is {len(text)} characters (limit {MAX_STATEMENT_SIZE})"
            )
        source_type = source_type or "manual"
        statement_id = str(uuid.uuid4())
        title = derive_title(text)
        now = utc_now()
        self._store.execute("""
            INSERT INTO statements
                (id, title, content, source, source_type, status,
                 embedding, model, created_at, last_verified)
            VALUES (?, ?, ?, ?, ?, 'pending', NULL, NULL, ?, ?)
        """, (statement_id, title, text, source, source_type, now, now))

        self._queue.enqueue("promote", statement_id, PROMOTE_PRIORITY)
        logger.info("Statement added: %s (%s)", statement_id, title)
        return AddResult(id=statement_id, title=title)

    def get_statement(self, statement_id: str) -> Statement:
        """Fetch a statement by id. Deleted statements are returned too."""
        row = self._store.fetchone("""
            SELECT id, title, content, source, source_type, status, model,
                   created_at, last_verified
            FROM statements WHERE id = ?
        """, (statement_id,))
        if row is None:
            raise StatementNotFound(f"Statement not found: {statement_id}")
        return Statement.from_row(row)

    def fetch_statement(self, statement_id: str) -> str:
        """Markdown rendering of a statement."""
        s = self.get_statement(statement_id)
        return (
            f"# {s.title}\n\n{s.content}\n\n---\n"
            f"Source: {s.source}\n"
            f"Status: {s.status}\n"
            f"Created: {s.created_at}\n"
            f"Last verified: {s.last_verified}\n"
        )

    def touch_statement(self, statement_id: str) -> None:
        """Mark a statement as verified now."""
        cursor = self._store.execute("""
            UPDATE statements SET last_verified = ?
            WHERE id = ? AND status != 'deleted'
        """, (utc_now(), statement_id))
        if cursor.rowcount == 0:
            raise StatementNotFound(f"Statement not found: {statement_id}")
        logger.info("Statement touched: %s", statement_id)

    def promote_statement(self, statement_id: str) -> bool:
        """pending -> active. Returns False if the statement was not pending."""
        cursor = self._store.execute("""
            UPDATE statements SET status = 'active'
            WHERE id = ? AND status = 'pending'
        """, (statement_id,))
        promoted = cursor.rowcount > 0
        if promoted:
            logger.info("Statement promoted: %s", statement_id)
        return promoted

    def delete_statement(self, statement_id: str) -> int:
        """
        Mark a statement deleted (terminal) and close its open issues.

        Returns the number of issues closed by the cascade.

        Raises:
            StatementNotFound: unknown id
        """
        with self._store.transaction() as conn:
            row = conn.execute(
                "SELECT status FROM statements WHERE id = ?", (statement_id,)
            ).fetchone()
            if row is None:
                raise StatementNotFound(f"Statement not found: {statement_id}")
            conn.execute(
                "UPDATE statements SET status = 'deleted' WHERE id = ?",
                (statement_id,),
            )
            closed = self._cascade_close(conn, statement_id)
        logger.info("Statement deleted: %s", statement_id)
        return closed

    def statement_counts(self) -> dict[str, int]:
        """Statement counts by status."""
        counts = {"pending": 0, "active": 0, "deleted": 0}
        for row in self._store.fetchall(
            "SELECT status, COUNT(*) AS cnt FROM statements GROUP BY status"
        ):
            counts[row["status"]] = row["cnt"]
        return counts

    # -------------------------------------------------------------------------
    # Promotion cycle
    # -------------------------------------------------------------------------

    def process_pending(self, stop_event: Optional[threading.Event] = None) -> CycleResult:
        """
        Run one promotion cycle over all pending statements.

        Statements are taken oldest first. Each is embedded if needed
        (a stale-model embedding counts as missing), checked by the
        detector, and then promoted or flagged. Anything not promoted is
        not revisited in the same cycle. Safe to run repeatedly.
        """
        result = CycleResult()
        with self._cycle_lock:
            seen: set[str] = set()
            while stop_event is None or not stop_event.is_set():
                row = self._next_pending(seen)
                if row is None:
                    break
                outcome = self._process_one(row)
                if outcome == "promoted":
                    result.promoted.append(row["id"])
                    continue
                seen.add(row["id"])
                if outcome == "flagged":
                    result.flagged.append(row["id"])
                else:
                    result.deferred.append(row["id"])
        if result.processed:
            logger.info(
                "Promotion cycle: %d promoted, %d flagged, %d deferred",
                len(result.promoted), len(result.flagged), len(result.deferred),
            )
        return result

    def _next_pending(self, exclude: set[str]):
        rows = self._store.fetchall("""
            SELECT id, content, embedding, model FROM statements
            WHERE status = 'pending'
            ORDER BY created_at ASC, id ASC
        """)
        for row in rows:
            if row["id"] not in exclude:
                return row
        return None

    def _process_one(self, row) -> str:
        statement_id = row["id"]
        if row["embedding"] is not None and row["model"] == self.embedding_model:
            embedding = blob_to_embedding(row["embedding"])
        else:
            try:
                embedding = self._embed_one(row["content"])
            except Exception as e:
                logger.debug("Embedding failed for %s, will retry: %s", statement_id, e)
                return "deferred"
            self._store_embedding(statement_id, embedding)

        detection = self.detector.detect(statement_id, row["content"], embedding)
        for conflict in detection.conflicts:
            self._open_issue(
                statement_id, conflict.other_id, conflict.type,
                conflict.score, conflict.explanation,
            )
        if detection.conflicts:
            logger.debug("Statement %s has %d conflicts, staying pending",
                         statement_id, len(detection.conflicts))
            return "flagged"
        if not detection.complete:
            return "deferred"
        return "promoted" if self.promote_statement(statement_id) else "deferred"

    def check_contradictions(self, statement_id: str) -> int:
        """
        Judge an active statement against its nearest active neighbours.

        Opens a contradiction issue for each "yes". Never promotes or
        demotes. Pending statements are left to the promotion cycle and
        deleted ones are ignored. Returns the number of issues opened.

        Raises:
            StatementNotFound: unknown id
            ModelUnavailable: the statement's embedding could not be computed
        """
        statement = self.get_statement(statement_id)
        if statement.status != "active":
            logger.debug("Skipping contradiction check for %s statement %s",
                         statement.status, statement_id)
            return 0
        embedding = self._current_embedding(statement_id)
        if embedding is None:
            embedding = self._embed_one(statement.content)
            self._store_embedding(statement_id, embedding)

        detector = self.detector
        if not isinstance(detector, JudgmentDuplicateDetector):
            # Math mode gates candidates by the query similarity threshold
            detector = JudgmentDuplicateDetector(
                self, self.similarity_threshold, self.judgment_top_k,
            )
        detection = detector.detect(statement_id, statement.content, embedding)
        opened = 0
        for conflict in detection.conflicts:
            if self._open_issue(
                statement_id, conflict.other_id, "contradiction",
                conflict.score, conflict.explanation,
            ):
                opened += 1
        return opened

    # -------------------------------------------------------------------------
    # Issues
    # -------------------------------------------------------------------------

    def list_open_issues(self) -> list[Issue]:
        """Open issues, highest score first, with both statements inlined."""
        rows = self._store.fetchall("""
            SELECT i.id, i.type, i.status, i.statement_a, i.statement_b,
                   i.score, i.explanation, i.created_at, i.resolved_at,
                   i.resolution,
                   CASE WHEN sa.id IS NULL OR sa.status = 'deleted'
                        THEN '[deleted]' ELSE sa.content END AS content_a,
                   CASE WHEN sb.id IS NULL OR sb.status = 'deleted'
                        THEN '[deleted]' ELSE sb.content END AS content_b,
                   COALESCE(sa.source, '') AS source_a,
                   COALESCE(sb.source, '') AS source_b
            FROM issues i
            LEFT JOIN statements sa ON sa.id = i.statement_a
            LEFT JOIN statements sb ON sb.id = i.statement_b
            WHERE i.status = 'open'
            ORDER BY i.score DESC, i.created_at ASC
        """)
        return [Issue(**dict(row)) for row in rows]

    def open_issue_count(self) -> int:
        row = self._store.fetchone("SELECT COUNT(*) FROM issues WHERE status = 'open'")
        return row[0]

    def resolve_issue(self, issue_id: str, action: str) -> None:
        """
        Resolve an open issue.

        keep_a / keep_b delete the other statement and promote the kept
        one; keep_both promotes both; delete_both deletes both. Every
        deletion closes the other open issues referencing that statement.

        Raises:
            InvalidResolution: unknown action (checked before any change)
            IssueNotFound: unknown issue id
            IssueNotOpen: the issue is already resolved
        """
        if action not in RESOLUTION_ACTIONS:
            raise InvalidResolution(
                f"Unknown action '{action}'. Valid: {', '.join(RESOLUTION_ACTIONS)}"
            )
        now = utc_now()
        with self._store.transaction() as conn:
            row = conn.execute(
                "SELECT status, statement_a, statement_b FROM issues WHERE id = ?",
                (issue_id,),
            ).fetchone()
            if row is None:
                raise IssueNotFound(f"Issue not found: {issue_id}")
            if row["status"] != "open":
                raise IssueNotOpen(f"Issue {issue_id} is not open (status: {row['status']})")
            a, b = row["statement_a"], row["statement_b"]

            # Close this issue first so the cascade only touches the others
            conn.execute("""
                UPDATE issues SET status = 'resolved', resolution = ?, resolved_at = ?
                WHERE id = ?
            """, (action, now, issue_id))

            deleted = {"keep_a": [b], "keep_b": [a], "delete_both": [a, b]}.get(action, [])
            kept = {"keep_a": [a], "keep_b": [b], "keep_both": [a, b]}.get(action, [])
            for statement_id in deleted:
                conn.execute(
                    "UPDATE statements SET status = 'deleted' WHERE id = ?",
                    (statement_id,),
                )
                self._cascade_close(conn, statement_id)
            for statement_id in kept:
                conn.execute(
                    "UPDATE statements SET status = 'active' WHERE id = ? AND status = 'pending'",
                    (statement_id,),
                )
        logger.info("Issue resolved: %s (%s)", issue_id, action)

    def _cascade_close(self, conn, statement_id: str) -> int:
        cursor = conn.execute("""
            UPDATE issues SET status = 'resolved', resolution = 'cascade', resolved_at = ?
            WHERE status = 'open' AND (statement_a = ? OR statement_b = ?)
        """, (utc_now(), statement_id, statement_id))
        if cursor.rowcount:
            logger.info("Cascade closed %d issues for deleted statement %s",
                        cursor.rowcount, statement_id)
        return cursor.rowcount

    def _open_issue(
        self,
        a: str,
        b: str,
        issue_type: str,
        score: float,
        explanation: str = "",
    ) -> bool:
        """Open an issue for the pair unless one is already open.

        Returns True if a new issue was created.
        """
        issue_id = str(uuid.uuid4())
        cursor = self._store.execute("""
            INSERT OR IGNORE INTO issues
                (id, type, status, statement_a, statement_b, pair_key,
                 score, explanation, created_at)
            VALUES (?, ?, 'open', ?, ?, ?, ?, ?, ?)
        """, (issue_id, issue_type, a, b, pair_key(a, b), score, explanation, utc_now()))
        if cursor.rowcount:
            logger.info("Issue opened: %s %s %s/%s (score %.3f)",
                        issue_id, issue_type, a, b, score)
            return True
        return False

    def _pair_status(self, a: str, b: str) -> Optional[str]:
        """'open' if the pair has an open issue, 'resolved' if only resolved ones."""
        row = self._store.fetchone("""
            SELECT status FROM issues WHERE pair_key = ?
            ORDER BY status = 'open' DESC LIMIT 1
        """, (pair_key(a, b),))
        return row["status"] if row else None

    # -------------------------------------------------------------------------
    # Query
    # -------------------------------------------------------------------------

    def query(self, text: str) -> list[QueryResult]:
        """
        Similarity search over active statements.

        Returns an empty list when the query cannot be embedded.
        """
        try:
            query_emb = self._embed_one(text)
        except Exception as e:
            logger.warning("Query embedding failed, returning no results: %s", e)
            return []

        rows = self._store.fetchall("""
            SELECT id, content, source, last_verified, embedding
            FROM statements
            WHERE status = 'active' AND embedding IS NOT NULL AND model = ?
        """, (self.embedding_model,))

        results = []
        for row in rows:
            score = cosine_similarity(query_emb, blob_to_embedding(row["embedding"]))
            if score < self.similarity_threshold:
                continue
            results.append(QueryResult(
                id=row["id"],
                content=row["content"][:QUERY_CONTENT_MAX],
                source=row["source"],
                score=score,
                last_verified=row["last_verified"],
            ))
        results.sort(key=lambda r: r.score, reverse=True)
        return results[:self.max_results]

    # -------------------------------------------------------------------------
    # Re-embedding
    # -------------------------------------------------------------------------

    def reembed_stale(self) -> int:
        """
        Schedule refresh of embeddings produced by another model.

        Pending rows lose their stale embedding and are re-embedded by the
        promotion cycle. Active rows get a 'reembed' task each. Returns the
        number of statements scheduled.
        """
        rows = self._store.fetchall("""
            SELECT id, status FROM statements
            WHERE status != 'deleted' AND embedding IS NOT NULL
              AND (model IS NULL OR model != ?)
        """, (self.embedding_model,))
        pending = False
        for row in rows:
            if row["status"] == "pending":
                self._store.execute(
                    "UPDATE statements SET embedding = NULL, model = NULL WHERE id = ?",
                    (row["id"],),
                )
                pending = True
            else:
                self._queue.enqueue("reembed", row["id"])
        if pending:
            self._queue.enqueue("promote", "", PROMOTE_PRIORITY)
        if rows:
            logger.info("Scheduled %d stale statement embeddings", len(rows))
        return len(rows)

    def reembed_statement(self, statement_id: str) -> bool:
        """Recompute one statement's embedding with the current model.

        Returns False if the statement is deleted or already current.
        Model failures propagate so the task is retried.
        """
        statement = self.get_statement(statement_id)
        if statement.status == "deleted" or self._current_embedding(statement_id) is not None:
            return False
        self._store_embedding(statement_id, self._embed_one(statement.content))
        return True

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _candidates(self, statement_id: str, statuses: tuple[str, ...]):
        placeholders = ", ".join("?" for _ in statuses)
        rows = self._store.fetchall(f"""
            SELECT id, content, embedding FROM statements
            WHERE id != ? AND status IN ({placeholders})
              AND embedding IS NOT NULL AND model = ?
        """, (statement_id, *statuses, self.embedding_model))
        return [(r["id"], r["content"], blob_to_embedding(r["embedding"])) for r in rows]

    def _current_embedding(self, statement_id: str) -> Optional[list[float]]:
        row = self._store.fetchone(
            "SELECT embedding, model FROM statements WHERE id = ?", (statement_id,)
        )
        if row is None or row["embedding"] is None or row["model"] != self.embedding_model:
            return None
        return blob_to_embedding(row["embedding"])

    def _store_embedding(self, statement_id: str, embedding: list[float]) -> None:
        self._store.execute("""
            UPDATE statements SET embedding = ?, model = ?
            WHERE id = ? AND status != 'deleted'
        """, (embedding_to_blob(embedding), self.embedding_model, statement_id))

    def _embed_one(self, text: str) -> list[float]:
        try:
            vectors = self._model.embed([text])
        except Exception as e:
            raise ModelUnavailable(f"Embedding failed: {e}") from e
        if not vectors or not vectors[0]:
            raise ModelUnavailable("Model returned no embedding")
        return [float(v) for v in vectors[0]]

    def _generate(self, prompt: str, *, operation: str, target_id: str) -> str:
        start = time.monotonic()
        try:
            return self._model.generate(prompt)
        finally:
            duration_ms = int((time.monotonic() - start) * 1000)
            log_model_call(
                self._store, self.embedding_model, operation,
                "statement", target_id, duration_ms,
            )


def query_results_json(results: list[QueryResult]) -> str:
    """JSON array of query results; "[]" when there are none."""
    return json.dumps([r.to_dict() for r in results or []])


def log_model_call(
    store: Store,
    model: str,
    operation: str,
    target_type: str,
    target_id: str,
    duration_ms: int,
) -> None:
    """Record a model invocation for provenance. Best effort."""
    try:
        store.execute("""
            INSERT INTO model_audit
                (model, operation, target_type, target_id, duration_ms, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (model, operation, target_type, str(target_id), duration_ms, utc_now()))
    except Exception as e:
        logger.debug("Model audit write failed: %s", e)
