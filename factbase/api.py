"""
Core API for factbase.

KnowledgeBase owns the store, the model, the task queue and the worker
pool, and exposes the consistency engine and the category tree behind one
object.
"""

import logging
import threading
from pathlib import Path
from typing import Optional

from .config import StoreConfig, load_or_create_config, resolve_store_path
from .consistency import (
    CONTRADICTION_PRIORITY,
    PROMOTE_PRIORITY,
    AddResult,
    ConsistencyEngine,
    CycleResult,
    Issue,
    QueryResult,
    Statement,
    query_results_json,
)
from .logging_config import configure_ops_log
from .notes import Note, NoteIndexer, NoteStore, Vault
from .providers.base import LazyModel, Model
from .store import Store
from .task_queue import QueueTask, TaskQueue
from .tree import TreeIndex
from .workers import WorkerPool

logger = logging.getLogger(__name__)


class KnowledgeBase:
    """
    Embedded knowledge engine over one store directory.

    Example:
        with KnowledgeBase("~/.factbase") as kb:
            kb.start_workers()
            kb.add_statement("Water boils at 100 C at sea level.")
            kb.query("boiling point of water")
    """

    def __init__(
        self,
        store_path: Optional[str | Path] = None,
        *,
        config: Optional[StoreConfig] = None,
        model: Optional[Model] = None,
    ) -> None:
        """
        Open (or create) a store.

        Args:
            store_path: Store directory. Defaults to FACTBASE_STORE_PATH or ~/.factbase.
            config: Pre-loaded StoreConfig (skips filesystem config discovery).
            model: Injected model (skips provider creation from config).
        """
        if config is not None:
            self._config = config
        else:
            self._config = load_or_create_config(resolve_store_path(store_path))
        self._store_path = self._config.path

        if model is None:
            model = LazyModel(
                self._config.model.name,
                self._config.model.params,
                name=self._config.embedding_model,
            )
            # Don't force provider creation just to learn its name
            embedding_model = self._config.embedding_model or self._config.model.name
        else:
            embedding_model = getattr(model, "name", "") or self._config.model.name
        self._model = model

        self._ops_log_handler = configure_ops_log(self._store_path)

        workers = self._config.workers
        self._store = Store(self._config.db_path)
        self._queue = TaskQueue(self._store, max_attempts=workers.max_attempts)

        c = self._config.consistency
        self.consistency = ConsistencyEngine(
            self._store, self._model, self._queue,
            embedding_model=embedding_model,
            duplicate_strategy=c.duplicate_strategy,
            duplicate_threshold=c.duplicate_threshold,
            similarity_threshold=c.similarity_threshold,
            max_results=c.max_results,
            judgment_top_k=c.judgment_top_k,
        )

        self.notes = NoteStore(self._store, Vault(self._config.vault_path), self._queue)
        t = self._config.tree
        self.tree = TreeIndex(
            self._store, self._model, self.notes,
            embedding_model=embedding_model,
            max_leaf_size=t.max_leaf_size,
            max_node_children=t.max_node_children,
            query_threshold=t.query_threshold,
            max_selected=t.max_selected,
        )
        self._indexer = NoteIndexer(self.notes, self.tree, self._model)

        self._pool = WorkerPool(
            self._queue,
            {
                "promote": self._handle_promote,
                "contradiction_check": self._handle_contradiction_check,
                "index_note": self._handle_index_note,
                "reembed": self._handle_reembed,
            },
            poll_interval=workers.poll_interval,
            idle={"promote": self._retry_deferred},
        )
        # Set while a promotion cycle left statements pending on model errors
        self._promotion_deferred = threading.Event()
        self._closed = False

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def store_path(self) -> Path:
        return self._store_path

    @property
    def queue(self) -> TaskQueue:
        return self._queue

    @property
    def workers(self) -> WorkerPool:
        return self._pool

    # -------------------------------------------------------------------------
    # Statements
    # -------------------------------------------------------------------------

    def add_statement(self, text: str, source: str = "", source_type: str = "manual") -> AddResult:
        return self.consistency.add_statement(text, source, source_type)

    def get_statement(self, statement_id: str) -> Statement:
        return self.consistency.get_statement(statement_id)

    def fetch_statement(self, statement_id: str) -> str:
        return self.consistency.fetch_statement(statement_id)

    def touch_statement(self, statement_id: str) -> None:
        self.consistency.touch_statement(statement_id)

    def delete_statement(self, statement_id: str) -> int:
        return self.consistency.delete_statement(statement_id)

    def query(self, text: str) -> list[QueryResult]:
        return self.consistency.query(text)

    def query_json(self, text: str) -> str:
        return query_results_json(self.query(text))

    def list_open_issues(self) -> list[Issue]:
        return self.consistency.list_open_issues()

    def open_issue_count(self) -> int:
        return self.consistency.open_issue_count()

    def resolve_issue(self, issue_id: str, action: str) -> None:
        self.consistency.resolve_issue(issue_id, action)

    def process_pending(self) -> CycleResult:
        """Run one promotion cycle in the caller's thread."""
        return self._promotion_cycle()

    def check_contradictions(self, statement_id: str) -> Optional[int]:
        """Queue a contradiction re-check of an active statement."""
        self.consistency.get_statement(statement_id)
        return self._queue.enqueue("contradiction_check", statement_id, CONTRADICTION_PRIORITY)

    def reembed_stale(self) -> int:
        return self.consistency.reembed_stale()

    # -------------------------------------------------------------------------
    # Notes and tree
    # -------------------------------------------------------------------------

    def add_note(self, title: str, content: str, sources: Optional[list[str]] = None) -> tuple[int, str]:
        return self.notes.add_note(title, content, sources)

    def get_note(self, note_id: int) -> Note:
        return self.notes.get_note(note_id)

    def fetch_note(self, rel_path: str) -> str:
        return self.notes.fetch_note(rel_path)

    def touch_note(self, note_id: int) -> None:
        self.notes.touch_note(note_id)

    def index_note(self, note_id: int) -> list[str]:
        """Index a note synchronously. Returns its tags."""
        return self._indexer.index_note(note_id)

    def insert_note(self, note_id: int, tag: str, summary: str) -> None:
        self.tree.insert_note(note_id, tag, summary)

    def query_notes(self, text: str) -> list[Note]:
        return self.tree.query(text)

    def backfill_tree(self) -> dict:
        """Fill in missing leaf summaries and node embeddings."""
        return {
            "summaries": self.tree.backfill_summaries(),
            "embeddings": self.tree.backfill_embeddings(),
        }

    # -------------------------------------------------------------------------
    # Background work
    # -------------------------------------------------------------------------

    def start_workers(self) -> None:
        """
        Recover orphaned tasks and start one worker per task type.

        A promotion hint is queued so statements left pending by a previous
        run are picked up.
        """
        self._queue.recover_stale_tasks()
        if self.consistency.statement_counts()["pending"]:
            self._queue.enqueue("promote", "", PROMOTE_PRIORITY)
        self._pool.start()

    def stop_workers(self, grace: Optional[float] = None) -> bool:
        if grace is None:
            grace = self._config.workers.shutdown_grace
        return self._pool.stop(grace)

    def work(self, limit: int = 1000) -> int:
        """Drain the queue in the caller's thread. Returns tasks processed.

        Statements deferred by an earlier cycle get a fresh promotion hint.
        """
        self._queue.recover_stale_tasks()
        if self._promotion_deferred.is_set():
            self._queue.enqueue("promote", "", PROMOTE_PRIORITY)
        return self._pool.drain(limit=limit)

    def _promotion_cycle(self) -> CycleResult:
        # The stop event only interrupts cycles run by live workers
        stop_event = self._pool.stop_event if self._pool.running else None
        result = self.consistency.process_pending(stop_event)
        if result.deferred:
            self._promotion_deferred.set()
        else:
            self._promotion_deferred.clear()
        return result

    def _handle_promote(self, task: QueueTask) -> None:
        self._promotion_cycle()

    def _retry_deferred(self) -> None:
        """Idle tick of the promote worker: retry statements a model outage left pending."""
        if self._promotion_deferred.is_set():
            self._promotion_cycle()

    def _handle_contradiction_check(self, task: QueueTask) -> None:
        self.consistency.check_contradictions(task.payload)

    def _handle_index_note(self, task: QueueTask) -> None:
        self._indexer.index_note(int(task.payload))

    def _handle_reembed(self, task: QueueTask) -> None:
        self.consistency.reembed_statement(task.payload)

    # -------------------------------------------------------------------------
    # Status and lifecycle
    # -------------------------------------------------------------------------

    def status(self) -> dict:
        return {
            "store": str(self._store_path),
            "strategy": self.consistency.strategy,
            "statements": self.consistency.statement_counts(),
            "open_issues": self.consistency.open_issue_count(),
            "notes": self.notes.counts(),
            "categories": len(self.tree.root_labels()),
            "queue": self._queue.stats(),
            "workers_running": self._pool.running,
        }

    def close(self) -> None:
        """Stop workers (bounded by shutdown_grace) and close the store."""
        if self._closed:
            return
        self._closed = True
        if self._pool.running:
            self.stop_workers()
        self._store.close()

        # Remove ops log handler to avoid handler accumulation
        if self._ops_log_handler is not None:
            logging.getLogger("factbase").removeHandler(self._ops_log_handler)
            self._ops_log_handler.close()
            self._ops_log_handler = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
