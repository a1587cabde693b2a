"""
Tests for defensive parsing of model replies.
"""

import pytest

from factbase.judgment import is_yes, parse_csv, parse_groups, parse_related, select_labels


class TestSimpleReplies:

    def test_parse_csv(self):
        assert parse_csv(" a, b ,,c ") == ["a", "b", "c"]
        assert parse_csv("") == []
        assert parse_csv(None) == []

    @pytest.mark.parametrize("raw", ["none", "None.", "  NONE ", "", None])
    def test_parse_related_none(self, raw):
        assert parse_related(raw) == []

    def test_parse_related_titles(self):
        assert parse_related("Sourdough, Focaccia") == ["Sourdough", "Focaccia"]

    @pytest.mark.parametrize("raw,expected", [
        ("yes", True),
        ("Yes, they conflict.", True),
        ("  YES", True),
        ("no", False),
        ("Not really, yes", False),
        ("", False),
        (None, False),
    ])
    def test_is_yes(self, raw, expected):
        assert is_yes(raw) is expected


class TestParseGroups:

    def test_valid_reply(self):
        raw = '[{"label": "bread", "summary": "Bread.", "notes": [0, 2]}, {"label": "soup", "notes": [1]}]'
        parsed = parse_groups(raw, "notes", 3)
        assert parsed.ok
        assert [(g.label, g.members) for g in parsed.value] == [("bread", [0, 2]), ("soup", [1])]
        # Missing summary falls back to the label
        assert parsed.value[1].summary == "soup"

    def test_code_fence_and_prose_tolerated(self):
        fenced = '```json\n[{"label": "a", "summary": "s", "children": [0]}]\n```'
        assert parse_groups(fenced, "children", 1).value[0].label == "a"
        prose = 'Here you go:\n[{"label": "a", "summary": "s", "children": [0]}]\nHope that helps!'
        assert parse_groups(prose, "children", 1).value[0].label == "a"

    def test_bad_indices_dropped(self):
        raw = '[{"label": "a", "notes": [0, 5, -1, "1", true, 1.5, 1, 1]}]'
        assert parse_groups(raw, "notes", 2).value[0].members == [0, 1]

    def test_unlabelled_and_non_object_entries_dropped(self):
        raw = '[{"summary": "no label", "notes": [0]}, 3, "x", {"label": "ok", "notes": [0]}]'
        assert [g.label for g in parse_groups(raw, "notes", 1).value] == ["ok"]

    @pytest.mark.parametrize("raw", ["", "   ", None, "no json", "[not valid", '{"label": "a"}'])
    def test_unparseable_is_failure(self, raw):
        parsed = parse_groups(raw, "notes", 3)
        assert not parsed.ok
        assert parsed.value == []
        assert parsed.error


class TestSelectLabels:

    LABELS = ["bread", "Soup", "pastry"]

    def test_exact_and_case_insensitive(self):
        parsed = select_labels("bread, soup", self.LABELS)
        assert parsed.ok
        assert parsed.value == ["bread", "Soup"]

    def test_decorations_stripped_and_duplicates_merged(self):
        assert select_labels('"pastry", - bread, *pastry*', self.LABELS).value == ["pastry", "bread"]

    def test_unknown_names_ignored(self):
        assert select_labels("cake, pastry", self.LABELS).value == ["pastry"]

    def test_nothing_known_defaults_to_first(self):
        parsed = select_labels("cake", self.LABELS)
        assert not parsed.ok
        assert parsed.value == ["bread"]

    def test_no_labels(self):
        assert select_labels("anything", []).value == []


class TestMalformedMembers:

    @pytest.mark.parametrize("members", ["1.0", "3", '"0, 1"', '{"0": 1}', "true"])
    def test_non_list_members_drop_the_group(self, members):
        raw = '[{"label": "bad", "notes": %s}, {"label": "ok", "notes": [1]}]' % members
        parsed = parse_groups(raw, "notes", 2)
        assert parsed.ok
        assert [(g.label, g.members) for g in parsed.value] == [("ok", [1])]

    def test_missing_members_is_an_empty_group(self):
        parsed = parse_groups('[{"label": "a"}]', "children", 2)
        assert [(g.label, g.members) for g in parsed.value] == [("a", [])]
