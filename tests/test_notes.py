"""
Tests for the markdown vault, the notes table and background indexing.
"""

import pytest

from factbase.errors import NoteNotFound, ValidationError
from factbase.notes import (
    DEFAULT_TAG,
    Vault,
    render_markdown,
    sanitize_filename,
    split_frontmatter,
)

TAGS = "Pick categories/tags"
RELATED = "identify which notes are related"


class TestMarkdown:

    @pytest.mark.parametrize("title,name", [
        ("Sourdough", "Sourdough"),
        ("a/b\\c: d", "a-b-c- d"),
        ('what? "quoted" <x>|*', "what quoted x"),
        ("..hidden", "hidden"),
        ("///", "---"),
        ("", "untitled"),
    ])
    def test_sanitize_filename(self, title, name):
        assert sanitize_filename(title) == name

    def test_frontmatter_round_trip(self):
        text = render_markdown({"title": "T", "tags": ["a", "b"]}, "Body text.\n")
        frontmatter, body = split_frontmatter(text)
        assert frontmatter == {"title": "T", "tags": ["a", "b"]}
        assert body == "Body text.\n"

    def test_no_frontmatter(self):
        assert split_frontmatter("just text") == ({}, "just text")

    def test_invalid_frontmatter_treated_as_body(self):
        text = "---\ntitle: [unclosed\n---\nbody"
        assert split_frontmatter(text) == ({}, text)

    def test_scalar_frontmatter_ignored(self):
        text = "---\njust a string\n---\nbody"
        assert split_frontmatter(text) == ({}, text)


class TestVault:

    def test_path_escape_rejected(self, tmp_path):
        vault = Vault(tmp_path / "vault")
        (tmp_path / "secret.md").write_text("nope")
        with pytest.raises(ValidationError):
            vault.read("../secret.md")
        with pytest.raises(ValidationError):
            vault.write("../evil.md", {}, "x")

    def test_missing_file(self, tmp_path):
        with pytest.raises(NoteNotFound):
            Vault(tmp_path / "vault").read("missing.md")

    def test_update_frontmatter_keeps_body(self, tmp_path):
        vault = Vault(tmp_path / "vault")
        vault.write("n.md", {"title": "N", "tags": []}, "Body.")
        vault.update_frontmatter("n.md", tags=["x"])
        frontmatter, body = split_frontmatter(vault.read("n.md"))
        assert frontmatter == {"title": "N", "tags": ["x"]}
        assert body.strip() == "Body."


class TestNoteStore:

    def test_add_note_writes_vault_and_queues_indexing(self, kb):
        note_id, path = kb.add_note("Sourdough", "Feed the starter daily.", ["book:Flour"])
        assert path == "Sourdough.md"
        assert (kb.config.vault_path / path).exists()

        frontmatter, body = split_frontmatter(kb.fetch_note(path))
        assert frontmatter["title"] == "Sourdough"
        assert frontmatter["tags"] == []
        assert frontmatter["sources"] == ["book:Flour"]
        assert frontmatter["created"] == frontmatter["last_verified"]
        assert body.strip() == "Feed the starter daily."

        note = kb.get_note(note_id)
        assert note.title == "Sourdough"
        assert not note.indexed
        assert kb.queue.count("index_note") == 1

    def test_same_title_replaces_note(self, kb):
        first, _ = kb.add_note("Sourdough", "v1")
        second, path = kb.add_note("Sourdough", "v2")
        assert first == second
        assert "v2" in kb.fetch_note(path)
        assert kb.notes.counts()["total"] == 1

    def test_empty_title_rejected(self, kb):
        with pytest.raises(ValidationError):
            kb.add_note("   ", "content")

    def test_unknown_note(self, kb):
        with pytest.raises(NoteNotFound):
            kb.get_note(42)
        with pytest.raises(NoteNotFound):
            kb.fetch_note("missing.md")

    def test_touch_note(self, kb):
        note_id, path = kb.add_note("Sourdough", "x")
        kb.notes.vault.update_frontmatter(path, last_verified="2000-01-01")
        kb.touch_note(note_id)
        frontmatter, _ = split_frontmatter(kb.fetch_note(path))
        assert frontmatter["last_verified"] != "2000-01-01"
        assert kb.get_note(note_id).last_verified == frontmatter["last_verified"]


class TestIndexing:

    def test_index_via_worker_task(self, kb):
        note_id, path = kb.add_note("Sourdough", "Feed the starter daily.", ["book:Flour"])
        kb.work()

        note = kb.get_note(note_id)
        assert note.indexed
        assert note.summary == "About Sourdough."
        assert note.tags == ["general"]
        frontmatter, _ = split_frontmatter(kb.fetch_note(path))
        assert frontmatter["tags"] == ["general"]
        assert frontmatter["sources"] == ["book:Flour"]
        [root] = kb.tree.roots()
        assert root.label == "general"
        assert kb.tree.leaf_note_ids(root.id) == [note_id]

    def test_multiple_tags_insert_once_per_tag(self, kb, model):
        model.on(TAGS, "Cooking, bread, cooking, #Fermentation")
        note_id, _ = kb.add_note("Sourdough", "x")
        assert kb.index_note(note_id) == ["cooking", "bread", "fermentation"]
        assert sorted(kb.tree.root_labels()) == ["bread", "cooking", "fermentation"]
        for root in kb.tree.roots():
            assert kb.tree.leaf_note_ids(root.id) == [note_id]

    def test_empty_tag_reply_falls_back(self, kb, model):
        model.on(TAGS, "")
        note_id, _ = kb.add_note("Sourdough", "x")
        assert kb.index_note(note_id) == [DEFAULT_TAG]

    def test_existing_categories_offered(self, kb, model):
        first, _ = kb.add_note("Sourdough", "x")
        kb.index_note(first)
        second, _ = kb.add_note("Focaccia", "y")
        kb.index_note(second)
        prompt = model.prompts_with(TAGS)[-1]
        assert "Existing categories in the knowledge base:\ngeneral" in prompt

    def test_related_notes_linked(self, kb, model):
        first, _ = kb.add_note("Sourdough", "x")
        kb.index_note(first)
        model.on(RELATED, "Sourdough, Not A Real Note")
        second, path = kb.add_note("Focaccia", "Olive oil bread.")
        kb.index_note(second)

        text = kb.fetch_note(path)
        assert "## Related" in text
        assert "- [[Sourdough]]" in text
        assert "Not A Real Note" not in text

        # Re-indexing replaces the section instead of appending another
        kb.index_note(second)
        assert kb.fetch_note(path).count("## Related") == 1

    def test_related_failure_drops_links(self, kb, model):
        first, _ = kb.add_note("Sourdough", "x")
        kb.index_note(first)

        def fail(prompt):
            raise RuntimeError("timeout")

        model.on(RELATED, fail)
        second, path = kb.add_note("Focaccia", "y")
        kb.index_note(second)
        assert kb.get_note(second).indexed
        assert "## Related" not in kb.fetch_note(path)

    def test_summary_failure_propagates(self, kb, model):
        note_id, _ = kb.add_note("Sourdough", "x")
        model.fail_generate = True
        with pytest.raises(RuntimeError):
            kb.index_note(note_id)
        assert not kb.get_note(note_id).indexed

    def test_failed_index_task_is_retried(self, kb, model):
        note_id, _ = kb.add_note("Sourdough", "x")
        model.fail_generate = True
        kb.work()
        assert kb.queue.stats()["failed"] == 1
        assert len(model.prompts_with("Summarize the following note")) == 3

    def test_body_preserved(self, kb):
        note_id, path = kb.add_note("Sourdough", "Line one.\n\nLine two.")
        kb.index_note(note_id)
        _, body = split_frontmatter(kb.fetch_note(path))
        assert body.strip() == "Line one.\n\nLine two."
