"""
Self-organizing category tree over notes.

A forest: each root is a top-level category (a tag). Notes live in leaf
entries. When a leaf grows past max_leaf_size the model partitions its
notes into 2-4 new child leaves; when a node collects more than
max_node_children children the model groups them under 2-4 new internal
nodes. Every node carries a model-written summary and its embedding, which
gate query descent.

Model replies are parsed defensively (see judgment.py): any failure leaves
the structure as it was, or falls back to the first child when descending.
Structural changes are serialized by a tree lock; model calls never run
while the store lock is held.
"""

import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from .errors import NotFoundError
from .judgment import Parsed, parse_groups, select_labels
from .similarity import blob_to_embedding, cosine_similarity, embedding_to_blob
from .store import Store, utc_now

if TYPE_CHECKING:
    from .notes import Note, NoteStore
    from .providers.base import Model

logger = logging.getLogger(__name__)

MAX_LEAF_SIZE = 20
MAX_NODE_CHILDREN = 10
MAX_DEPTH = 32
DEFAULT_QUERY_THRESHOLD = 0.3

LEAF_SUMMARY_PROMPT = """This category is named "{label}". Describe what it covers based on its name and the following notes. The summary should reflect the broad scope implied by the category name, not just the current notes. Reply with ONLY a single concise sentence, nothing else.

Notes:
{items}"""

INTERNAL_SUMMARY_PROMPT = """This category is named "{label}". Describe what it covers based on its name and the following subcategories. The summary should reflect the broad scope implied by the category name, not just the current subcategories. Reply with ONLY a single concise sentence, nothing else.

Subcategories:
{items}"""

SELECT_CHILDREN_PROMPT = """Given a note summary and a list of subcategories, select ALL subcategories where this note belongs.

Note: {summary}

Subcategories:
{items}
Reply with ONLY a comma-separated list of selected subcategory names (exactly as shown above). If none fit well, reply with the single best match. Nothing else."""

SPLIT_LEAF_PROMPT = """Partition the following notes into 2-4 thematic clusters. A note can appear in multiple clusters if relevant.

Notes:
{items}
Reply with ONLY valid JSON in this exact format, nothing else:
[{{"label": "cluster-name", "summary": "one sentence description", "notes": [0, 2, 5]}}]

Where the numbers are the note indices from the list above."""

SPLIT_NODE_PROMPT = """Group the following subcategories into 2-4 meta-groups.

Subcategories:
{items}
Reply with ONLY valid JSON in this exact format, nothing else:
[{{"label": "group-name", "summary": "one sentence description", "children": [0, 2, 5]}}]

Where the numbers are the subcategory indices from the list above."""


class TreeDepthExceeded(RuntimeError):
    """Descent went deeper than MAX_DEPTH (corrupt or cyclic tree)."""


@dataclass
class TreeNode:
    id: int
    parent_id: Optional[int]
    label: str
    summary: str
    is_leaf: bool

    @classmethod
    def from_row(cls, row) -> "TreeNode":
        return cls(
            id=row["id"],
            parent_id=row["parent_id"],
            label=row["label"],
            summary=row["summary"],
            is_leaf=bool(row["is_leaf"]),
        )


_NODE_COLUMNS = "id, parent_id, label, summary, is_leaf"


def _run_concurrently(targets) -> None:
    """Run (callable, args) pairs in threads, join all, raise the first error."""
    errors: list[Exception] = []
    lock = threading.Lock()

    def run(fn, args):
        try:
            fn(*args)
        except Exception as e:
            with lock:
                errors.append(e)

    threads = [threading.Thread(target=run, args=(fn, args)) for fn, args in targets]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    if errors:
        raise errors[0]


class TreeIndex:
    """
    Category tree over the notes table.

    Example:
        tree = TreeIndex(store, model, notes)
        tree.insert_note(note_id, "cooking", "How to proof sourdough.")
        tree.query("bread baking")
    """

    def __init__(
        self,
        store: Store,
        model: "Model",
        notes: "NoteStore",
        *,
        embedding_model: Optional[str] = None,
        max_leaf_size: int = MAX_LEAF_SIZE,
        max_node_children: int = MAX_NODE_CHILDREN,
        query_threshold: float = DEFAULT_QUERY_THRESHOLD,
        max_selected: int = 0,
    ):
        self._store = store
        self._model = model
        self._notes = notes
        self.embedding_model = embedding_model or getattr(model, "name", "") or "default"
        self.max_leaf_size = max_leaf_size
        self.max_node_children = max_node_children
        self.query_threshold = query_threshold
        self.max_selected = max_selected
        self._lock = threading.RLock()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_node(self, node_id: int) -> TreeNode:
        row = self._store.fetchone(
            f"SELECT {_NODE_COLUMNS} FROM tree_nodes WHERE id = ?", (node_id,)
        )
        if row is None:
            raise NotFoundError(f"Tree node not found: {node_id}")
        return TreeNode.from_row(row)

    def roots(self) -> list[TreeNode]:
        rows = self._store.fetchall(
            f"SELECT {_NODE_COLUMNS} FROM tree_nodes WHERE parent_id IS NULL ORDER BY id"
        )
        return [TreeNode.from_row(r) for r in rows]

    def root_labels(self) -> list[str]:
        return [n.label for n in self.roots()]

    def children(self, node_id: int) -> list[TreeNode]:
        rows = self._store.fetchall(
            f"SELECT {_NODE_COLUMNS} FROM tree_nodes WHERE parent_id = ? ORDER BY id",
            (node_id,),
        )
        return [TreeNode.from_row(r) for r in rows]

    def leaf_note_ids(self, node_id: int) -> list[int]:
        rows = self._store.fetchall(
            "SELECT note_id FROM leaf_entries WHERE node_id = ? ORDER BY note_id",
            (node_id,),
        )
        return [r["note_id"] for r in rows]

    def leaf_size(self, node_id: int) -> int:
        row = self._store.fetchone(
            "SELECT COUNT(*) FROM leaf_entries WHERE node_id = ?", (node_id,)
        )
        return row[0]

    def child_count(self, node_id: int) -> int:
        row = self._store.fetchone(
            "SELECT COUNT(*) FROM tree_nodes WHERE parent_id = ?", (node_id,)
        )
        return row[0]

    def tree_snapshot(self) -> list[dict]:
        """Nested dicts describing the whole forest, for display."""
        def build(node: TreeNode, depth: int) -> dict:
            entry = {
                "id": node.id,
                "label": node.label,
                "summary": node.summary,
                "is_leaf": node.is_leaf,
            }
            if node.is_leaf:
                entry["notes"] = self.leaf_size(node.id)
            elif depth < MAX_DEPTH:
                entry["children"] = [build(c, depth + 1) for c in self.children(node.id)]
            return entry

        return [build(root, 0) for root in self.roots()]

    # -------------------------------------------------------------------------
    # Insertion
    # -------------------------------------------------------------------------

    def insert_note(self, note_id: int, tag: str, summary: str) -> None:
        """
        File a note under the category `tag`.

        Creates the root if needed. Descends through internal nodes by
        model selection, fanning out into every selected child.
        """
        root_id = self._find_or_create_root(tag)
        self._insert_at(root_id, note_id, summary, 0)

    def _find_or_create_root(self, tag: str) -> int:
        with self._store.transaction() as conn:
            row = conn.execute(
                "SELECT id FROM tree_nodes WHERE parent_id IS NULL AND label = ? ORDER BY id LIMIT 1",
                (tag,),
            ).fetchone()
            if row is not None:
                return row["id"]
            cursor = conn.execute(
                "INSERT INTO tree_nodes (parent_id, label, summary, is_leaf) VALUES (NULL, ?, ?, 1)",
                (tag, tag),
            )
        logger.info("Created root category %s", tag)
        return cursor.lastrowid

    def _insert_at(self, node_id: int, note_id: int, summary: str, depth: int) -> None:
        if depth > MAX_DEPTH:
            raise TreeDepthExceeded(f"Descent exceeded depth {MAX_DEPTH} at node {node_id}")
        if self._insert_into_leaf(node_id, note_id):
            return
        self._descend(node_id, note_id, summary, depth)

    def _insert_into_leaf(self, node_id: int, note_id: int) -> bool:
        """Insert into node_id if it is (still) a leaf. Returns False otherwise."""
        with self._lock:
            node = self.get_node(node_id)
            if not node.is_leaf:
                return False
            self._store.execute(
                "INSERT OR IGNORE INTO leaf_entries (node_id, note_id) VALUES (?, ?)",
                (node_id, note_id),
            )
            if self.leaf_size(node_id) > self.max_leaf_size:
                self.split_leaf(node_id)

        # After a split the node is internal and summarizes its new children
        self._refresh_summary(node_id)
        self._propagate_up(node_id)
        return True

    def _descend(self, node_id: int, note_id: int, summary: str, depth: int) -> None:
        children = self.children(node_id)
        if not children:
            # An internal node without children can only hold entries itself
            self._store.execute("UPDATE tree_nodes SET is_leaf = 1 WHERE id = ?", (node_id,))
            self._insert_at(node_id, note_id, summary, depth + 1)
            return

        selection = self._select_children(children, summary)
        targets = [c for c in children if c.label in selection.value]
        if len(targets) == 1:
            self._insert_at(targets[0].id, note_id, summary, depth + 1)
            return
        _run_concurrently(
            (self._insert_at, (c.id, note_id, summary, depth + 1)) for c in targets
        )

    def _select_children(self, children: list[TreeNode], summary: str) -> Parsed[list[str]]:
        labels = [c.label for c in children]
        items = "".join(f"- {c.label}: {c.summary}\n" for c in children)
        try:
            raw = self._model.generate(
                SELECT_CHILDREN_PROMPT.format(summary=summary, items=items)
            )
        except Exception as e:
            logger.warning("Descent selection failed, using first child: %s", e)
            return Parsed.failure(labels[:1], str(e))
        selection = select_labels(raw, labels)
        if not selection.ok:
            logger.warning("Descent selection unparseable, using first child: %s", selection.error)
        return selection

    # -------------------------------------------------------------------------
    # Splitting
    # -------------------------------------------------------------------------

    def split_leaf(self, node_id: int) -> bool:
        """
        Partition an oversized leaf into 2-4 child leaves.

        Returns True if the leaf was split. On model failure, unparseable
        output or fewer than two usable groups the leaf is left as is.
        Notes the model left out go into the first group.
        """
        with self._lock:
            rows = self._store.fetchall("""
                SELECT n.id, n.title, n.summary FROM leaf_entries le
                JOIN notes n ON n.id = le.note_id
                WHERE le.node_id = ?
                ORDER BY n.id
            """, (node_id,))
            if len(rows) < 2:
                return False

            items = "".join(
                f"{i}. {r['title']}: {r['summary']}\n" for i, r in enumerate(rows)
            )
            try:
                raw = self._model.generate(SPLIT_LEAF_PROMPT.format(items=items))
            except Exception as e:
                logger.error("Leaf split judgment failed for node %d: %s", node_id, e)
                return False

            parsed = parse_groups(raw, "notes", len(rows))
            groups = [g for g in parsed.value if g.members]
            if not parsed.ok or len(groups) < 2:
                logger.error(
                    "Leaf split for node %d unusable (%s), leaving unsplit",
                    node_id, parsed.error or f"{len(groups)} groups",
                )
                return False

            assigned = {idx for g in groups for idx in g.members}
            groups[0].members.extend(i for i in range(len(rows)) if i not in assigned)

            embeddings = self._try_embed([g.summary for g in groups])
            with self._store.transaction() as conn:
                conn.execute("UPDATE tree_nodes SET is_leaf = 0 WHERE id = ?", (node_id,))
                conn.execute("DELETE FROM leaf_entries WHERE node_id = ?", (node_id,))
                for i, g in enumerate(groups):
                    child_id = conn.execute(
                        "INSERT INTO tree_nodes (parent_id, label, summary, is_leaf) VALUES (?, ?, ?, 1)",
                        (node_id, g.label, g.summary),
                    ).lastrowid
                    conn.executemany(
                        "INSERT OR IGNORE INTO leaf_entries (node_id, note_id) VALUES (?, ?)",
                        [(child_id, rows[idx]["id"]) for idx in g.members],
                    )
                    if embeddings is not None:
                        self._store_node_embedding(child_id, embeddings[i])

            logger.info("Split leaf %d into %d clusters", node_id, len(groups))
            parent_id = self.get_node(node_id).parent_id
            for candidate in (node_id, parent_id):
                if candidate is not None and self.child_count(candidate) > self.max_node_children:
                    self.split_node(candidate)
            return True

    def split_node(self, node_id: int) -> bool:
        """
        Group the children of an over-wide node under 2-4 new internal nodes.

        Grouped children are re-parented; a child named by several groups
        goes to the first. Children no group mentions stay where they are.
        Returns True if the node was restructured.
        """
        with self._lock:
            children = self.children(node_id)
            if len(children) <= self.max_node_children:
                return False

            items = "".join(
                f"{i}. {c.label}: {c.summary}\n" for i, c in enumerate(children)
            )
            try:
                raw = self._model.generate(SPLIT_NODE_PROMPT.format(items=items))
            except Exception as e:
                logger.error("Node split judgment failed for node %d: %s", node_id, e)
                return False

            parsed = parse_groups(raw, "children", len(children))
            claimed: set[int] = set()
            groups = []
            for g in parsed.value:
                g.members = [idx for idx in g.members if idx not in claimed]
                claimed.update(g.members)
                if g.members:
                    groups.append(g)
            if not parsed.ok or len(groups) < 2:
                logger.error(
                    "Node split for node %d unusable (%s), leaving unchanged",
                    node_id, parsed.error or f"{len(groups)} groups",
                )
                return False

            embeddings = self._try_embed([g.summary for g in groups])
            with self._store.transaction() as conn:
                for i, g in enumerate(groups):
                    group_id = conn.execute(
                        "INSERT INTO tree_nodes (parent_id, label, summary, is_leaf) VALUES (?, ?, ?, 0)",
                        (node_id, g.label, g.summary),
                    ).lastrowid
                    conn.executemany(
                        "UPDATE tree_nodes SET parent_id = ? WHERE id = ?",
                        [(group_id, children[idx].id) for idx in g.members],
                    )
                    if embeddings is not None:
                        self._store_node_embedding(group_id, embeddings[i])

            logger.info("Split node %d into %d groups", node_id, len(groups))
            return True

    # -------------------------------------------------------------------------
    # Summaries
    # -------------------------------------------------------------------------

    def update_leaf_summary(self, node_id: int) -> bool:
        """Regenerate a leaf's summary from its notes and re-embed it."""
        node = self.get_node(node_id)
        rows = self._store.fetchall("""
            SELECT n.title, n.summary FROM notes n
            JOIN leaf_entries le ON le.note_id = n.id
            WHERE le.node_id = ?
            ORDER BY n.id
        """, (node_id,))
        if not rows:
            return False
        items = "".join(f"- {r['title']}: {r['summary']}\n" for r in rows)
        summary = self._model.generate(
            LEAF_SUMMARY_PROMPT.format(label=node.label, items=items)
        ).strip()
        self._set_summary(node_id, summary)
        return True

    def update_internal_summary(self, node_id: int) -> bool:
        """Regenerate an internal node's summary from its children and re-embed it."""
        node = self.get_node(node_id)
        children = self.children(node_id)
        if not children:
            return False
        items = "".join(f"- {c.label}: {c.summary}\n" for c in children)
        summary = self._model.generate(
            INTERNAL_SUMMARY_PROMPT.format(label=node.label, items=items)
        ).strip()
        self._set_summary(node_id, summary)
        return True

    def _set_summary(self, node_id: int, summary: str) -> None:
        if not summary:
            return
        self._store.execute(
            "UPDATE tree_nodes SET summary = ? WHERE id = ?", (summary, node_id)
        )
        self._embed_and_store(node_id, summary)

    def _refresh_summary(self, node_id: int) -> None:
        try:
            if self.get_node(node_id).is_leaf:
                self.update_leaf_summary(node_id)
            else:
                self.update_internal_summary(node_id)
        except Exception as e:
            logger.warning("Summary update failed for node %d: %s", node_id, e)

    def _propagate_up(self, node_id: int) -> None:
        """Regenerate each ancestor's summary, walking up to the root."""
        current = self.get_node(node_id).parent_id
        depth = 0
        while current is not None and depth <= MAX_DEPTH:
            try:
                self.update_internal_summary(current)
            except Exception as e:
                logger.warning("Summary propagation stopped at node %d: %s", current, e)
                return
            current = self.get_node(current).parent_id
            depth += 1

    def backfill_summaries(self) -> int:
        """Summarize leaves whose summary is still their label. Returns count updated."""
        rows = self._store.fetchall("""
            SELECT id FROM tree_nodes WHERE is_leaf = 1 AND summary = label ORDER BY id
        """)
        updated = 0
        for row in rows:
            try:
                if not self.update_leaf_summary(row["id"]):
                    continue
            except Exception as e:
                logger.warning("Backfill summary failed for node %d: %s", row["id"], e)
                continue
            self._propagate_up(row["id"])
            updated += 1
        if updated:
            logger.info("Backfilled %d leaf summaries", updated)
        return updated

    # -------------------------------------------------------------------------
    # Embeddings
    # -------------------------------------------------------------------------

    def node_embedding(self, node_id: int) -> Optional[list[float]]:
        """Stored embedding for a node, or None if missing or from another model."""
        row = self._store.fetchone(
            "SELECT model, embedding FROM node_embeddings WHERE node_id = ?", (node_id,)
        )
        if row is None or row["model"] != self.embedding_model:
            return None
        return blob_to_embedding(row["embedding"])

    def _store_node_embedding(self, node_id: int, embedding: list[float]) -> None:
        self._store.execute("""
            INSERT OR REPLACE INTO node_embeddings (node_id, model, embedding, updated_at)
            VALUES (?, ?, ?, ?)
        """, (node_id, self.embedding_model, embedding_to_blob(embedding), utc_now()))

    def _try_embed(self, texts: list[str]) -> Optional[list[list[float]]]:
        try:
            vectors = self._model.embed(texts)
        except Exception as e:
            logger.warning("Node embedding failed: %s", e)
            return None
        if len(vectors) != len(texts):
            logger.warning("Model returned %d embeddings for %d texts", len(vectors), len(texts))
            return None
        return vectors

    def _embed_and_store(self, node_id: int, text: str) -> Optional[list[float]]:
        vectors = self._try_embed([text])
        if not vectors or not vectors[0]:
            return None
        self._store_node_embedding(node_id, vectors[0])
        return vectors[0]

    def backfill_embeddings(self) -> int:
        """
        Embed nodes that have a real summary but no current-model embedding,
        then drop embeddings whose node no longer exists. Returns count embedded.
        """
        rows = self._store.fetchall("""
            SELECT tn.id, tn.summary FROM tree_nodes tn
            LEFT JOIN node_embeddings ne ON ne.node_id = tn.id AND ne.model = ?
            WHERE tn.summary != tn.label AND ne.node_id IS NULL
            ORDER BY tn.id
        """, (self.embedding_model,))
        embedded = sum(
            1 for row in rows if self._embed_and_store(row["id"], row["summary"]) is not None
        )
        self._store.execute(
            "DELETE FROM node_embeddings WHERE node_id NOT IN (SELECT id FROM tree_nodes)"
        )
        if embedded:
            logger.info("Backfilled %d node embeddings", embedded)
        return embedded

    # -------------------------------------------------------------------------
    # Query
    # -------------------------------------------------------------------------

    def query(self, text: str) -> list["Note"]:
        """
        Notes reachable by descending nodes similar to `text`.

        At each level nodes at or above query_threshold are followed. When
        the query or any candidate cannot be embedded, every candidate is
        followed instead.
        """
        query_emb = None
        vectors = self._try_embed([text])
        if vectors and vectors[0]:
            query_emb = vectors[0]

        collected: set[int] = set()
        lock = threading.Lock()
        self._query_level(self.roots(), query_emb, collected, lock, 0)
        return self._notes.get_notes(collected)

    def _query_level(
        self,
        nodes: list[TreeNode],
        query_emb: Optional[list[float]],
        collected: set[int],
        lock: threading.Lock,
        depth: int,
    ) -> None:
        if depth > MAX_DEPTH:
            logger.warning("Query descent stopped at depth %d", depth)
            return
        selected = self.select_nodes(query_emb, nodes)
        for node in selected:
            if node.is_leaf:
                ids = self.leaf_note_ids(node.id)
                with lock:
                    collected.update(ids)
        _run_concurrently(
            (self._query_level, (self.children(n.id), query_emb, collected, lock, depth + 1))
            for n in selected if not n.is_leaf
        )

    def select_nodes(
        self,
        query_emb: Optional[list[float]],
        nodes: list[TreeNode],
    ) -> list[TreeNode]:
        """Nodes at or above the threshold, best first, capped at max_selected.

        All nodes are returned if any embedding is missing.
        """
        if query_emb is None:
            return list(nodes)
        scored = []
        for node in nodes:
            emb = self.node_embedding(node.id)
            if emb is None:
                emb = self._embed_and_store(node.id, node.summary)
            if emb is None:
                return list(nodes)
            scored.append((cosine_similarity(query_emb, emb), node))
        scored.sort(key=lambda s: s[0], reverse=True)
        selected = [node for score, node in scored if score >= self.query_threshold]
        if self.max_selected > 0:
            selected = selected[:self.max_selected]
        return selected
