"""Tests for master-tag derivation, mapping persistence and taxonomy sync."""

import json

import pytest

from shelf.errors import AIResponseMalformed, ModelNotSelected
from shelf.tags import compact_tag, split_tags
from shelf.taxonomy import (
    MappingStore,
    TaxonomyEngine,
    TaxonomyIndex,
    compute_master_tags,
    derive_master_tags,
    parse_implication_rules,
    parse_mapping_response,
    prune_redundant_tags,
)

from conftest import FakeGenerator


SPACE_MAPPING = {
    "Space-Opera": "Science-Fiction",
    "Military-Fiction": "Science-Fiction",
    "Robotics": "Computer-Science",
}


def _classify_all(category="Philosophy"):
    """Responder that maps every tag in a learning prompt to ``category``."""
    def respond(system, user):
        # Second prompt line is the comma-joined batch
        tags = user.splitlines()[1].split(", ")
        return json.dumps({t: category for t in tags})
    return respond


class TestComputeMasterTags:

    def test_frequency_ranking_and_super_type(self):
        result = compute_master_tags("Space-Opera, Military-Fiction, Robotics", SPACE_MAPPING)
        assert result == "Fiction, Science-Fiction, Computer-Science"

    def test_deterministic(self):
        first = compute_master_tags("Space-Opera, Military-Fiction, Robotics", SPACE_MAPPING)
        second = compute_master_tags("Space-Opera, Military-Fiction, Robotics", SPACE_MAPPING)
        assert first == second

    def test_normalized_lookup(self):
        assert compute_master_tags("space opera", SPACE_MAPPING) == "Fiction, Science-Fiction"

    def test_no_mapped_tags(self):
        assert compute_master_tags("Unknown-Thing", SPACE_MAPPING) == ""
        assert compute_master_tags(None, SPACE_MAPPING) == ""

    def test_at_most_two_specific_categories(self):
        mapping = {"A": "History", "B": "Travel", "C": "Philosophy"}
        assert compute_master_tags("A, B, C", mapping) == "Non-Fiction, History, Travel"

    def test_ties_keep_first_seen_order(self):
        mapping = {"A": "Travel", "B": "History"}
        assert compute_master_tags("A, B", mapping) == "Non-Fiction, Travel, History"

    def test_super_type_label_not_repeated(self):
        mapping = {"Novel": "Fiction", "Dragons": "Fantasy"}
        assert compute_master_tags("Novel, Dragons", mapping) == "Fiction, Fantasy"

    def test_accepts_index(self):
        index = TaxonomyIndex(SPACE_MAPPING)
        assert compute_master_tags(["Robotics"], index) == "Non-Fiction, Computer-Science"


class TestPruning:

    def test_removes_tags_matching_a_master_tag(self):
        pruned = prune_redundant_tags("Science Fiction, Space-Opera", "Fiction, Science-Fiction")
        assert pruned == "Space-Opera"

    def test_prune_twice_is_noop(self):
        once = prune_redundant_tags("Science-Fiction, Space-Opera, Fiction", "Fiction, Science-Fiction")
        assert prune_redundant_tags(once, "Fiction, Science-Fiction") == once

    def test_derive_reaches_fixed_point(self):
        mapping = {"Science-Fiction": "Science-Fiction", "Space-Opera": "Science-Fiction", "Robotics": "Computer-Science"}
        master, pruned = derive_master_tags("Science-Fiction, Space-Opera, Robotics", mapping)
        assert master == "Fiction, Science-Fiction, Computer-Science"
        assert pruned == "Space-Opera, Robotics"
        assert derive_master_tags(pruned, mapping) == (master, pruned)

    def test_derived_raw_tags_never_duplicate_master_tags(self):
        mapping = {"History": "History", "War": "History", "Travel": "Travel", "Maps": "Travel"}
        master, pruned = derive_master_tags("History, War, Travel, Maps", mapping)
        masters = {compact_tag(m) for m in split_tags(master)}
        assert not any(compact_tag(t) in masters for t in split_tags(pruned))


class TestMappingStore:

    def test_missing_file_is_empty(self, tmp_path):
        assert MappingStore(tmp_path / "taxonomy.json").load() == {}

    def test_merge_persists_and_keeps_existing(self, tmp_path):
        ms = MappingStore(tmp_path / "taxonomy.json")
        ms.merge({"Robots": "Computer-Science"})
        merged = ms.merge({"Robots": "Horror", "Dragons": "Fantasy"})

        assert merged == {"Robots": "Computer-Science", "Dragons": "Fantasy"}
        on_disk = json.loads((tmp_path / "taxonomy.json").read_text())
        assert on_disk == merged

    def test_non_object_rejected(self, tmp_path):
        path = tmp_path / "taxonomy.json"
        path.write_text("[1, 2]")
        with pytest.raises(ValueError):
            MappingStore(path).load()


class TestParseMappingResponse:

    def test_keys_matched_to_batch_and_values_canonicalized(self):
        raw = json.dumps({"space opera": "science fiction", "Robots": "Computer-Science"})
        result = parse_mapping_response(raw, ["Space-Opera", "Robots"])
        assert result == {"Space-Opera": "Science-Fiction", "Robots": "Computer-Science"}

    def test_unasked_tags_and_unknown_categories_dropped(self):
        raw = json.dumps({"Robots": "Gadgets", "Elsewhere": "History"})
        assert parse_mapping_response(raw, ["Robots"]) == {}

    def test_not_json(self):
        with pytest.raises(AIResponseMalformed):
            parse_mapping_response("sure, here you go", ["Robots"])

    def test_not_an_object(self):
        with pytest.raises(AIResponseMalformed):
            parse_mapping_response('["Robots"]', ["Robots"])


class TestImplicationRules:

    def test_sentence_form(self):
        text = "If a book is about `Machine-Learning`, ensure it is also tagged `Artificial-Intelligence`."
        rules = parse_implication_rules(text)
        assert [(r.child, r.parent) for r in rules] == [("Machine-Learning", "Artificial-Intelligence")]

    def test_arrow_form(self):
        text = "- Space-Opera -> Science-Fiction\n`Dragons` -> `Fantasy`"
        rules = parse_implication_rules(text)
        assert [(r.child, r.parent) for r in rules] == [
            ("Space-Opera", "Science-Fiction"), ("Dragons", "Fantasy"),
        ]

    def test_prose_lines_ignored(self):
        text = "Prefer specific genres over broad ones.\nNever use the tag Book."
        assert parse_implication_rules(text) == []

    def test_self_implication_ignored(self):
        assert parse_implication_rules("Robots -> robots") == []

    def test_comma_tags_ignored(self):
        assert parse_implication_rules("Dragons -> Fantasy, Magic") == []


class TestTaxonomySync:

    def _engine(self, store, tmp_path, generator, **kwargs):
        return TaxonomyEngine(store, generator, MappingStore(tmp_path / "taxonomy.json"), **kwargs)

    def test_rules_resolve_without_model(self, store, tmp_path, add_items):
        add_items(store, "/lib/a.epub")
        store.update_content("/lib/a.epub", tags="1990s, World-War-II", summary="s")
        generator = FakeGenerator()
        events = []

        count = self._engine(store, tmp_path, generator).sync(events.append)

        assert generator.calls == []
        assert count == 1
        item = store.get("/lib/a.epub")
        assert item.master_tags == "Non-Fiction, History"
        assert item.tags == "1990s, World-War-II"
        assert [e.type for e in events] == ["start", "phase_applying", "progress_applying", "complete"]
        assert events[-1].data == {"count": 1}

    def test_rule_mappings_applied_when_no_model(self, store, tmp_path, add_items):
        add_items(store, "/lib/a.epub", "/lib/b.epub")
        store.update_content("/lib/a.epub", tags="World-War-II, Obscure-Topic", summary="s")
        store.update_content("/lib/b.epub", tags="1990s", summary="s")
        generator = FakeGenerator()

        def no_model():
            raise ModelNotSelected()

        generator.ensure_loaded = no_model
        events = []

        with pytest.raises(ModelNotSelected):
            self._engine(store, tmp_path, generator).sync(events.append)

        assert generator.calls == []
        assert store.get("/lib/a.epub").master_tags == "Non-Fiction, History"
        assert store.get("/lib/b.epub").master_tags == "Non-Fiction, History"
        assert [e.type for e in events] == ["start", "phase_applying", "progress_applying"]

    def test_learns_unknown_tags_and_applies(self, store, tmp_path, add_items):
        add_items(store, "/lib/a.epub", "/lib/b.epub")
        store.update_content("/lib/a.epub", tags="Stoicism, Ethics-Puzzles", summary="s")
        store.update_content("/lib/b.epub", tags="Stoicism", summary="s")
        generator = FakeGenerator(_classify_all("Philosophy"))

        self._engine(store, tmp_path, generator).sync()

        assert len(generator.calls) == 1
        mapping = MappingStore(tmp_path / "taxonomy.json").load()
        assert mapping == {"Stoicism": "Philosophy", "Ethics-Puzzles": "Philosophy"}
        assert store.get("/lib/b.epub").master_tags == "Non-Fiction, Philosophy"

    def test_sync_is_idempotent(self, store, tmp_path, add_items):
        add_items(store, "/lib/a.epub")
        store.update_content("/lib/a.epub", tags="Stoicism, Philosophy", summary="s")
        generator = FakeGenerator(_classify_all("Philosophy"))
        engine = self._engine(store, tmp_path, generator)

        assert engine.sync() == 1
        first = store.get("/lib/a.epub")
        assert engine.sync() == 0
        second = store.get("/lib/a.epub")
        assert (first.tags, first.master_tags) == (second.tags, second.master_tags)
        assert len(generator.calls) == 1

    def test_interrupted_sync_does_not_relearn_saved_batches(self, store, tmp_path, add_items):
        tags = [f"Obscure-Topic-{i}" for i in range(6)]
        add_items(store, "/lib/a.epub")
        store.update_content("/lib/a.epub", tags=", ".join(tags), summary="s")

        asked: list[str] = []
        respond = _classify_all("Travel")

        def flaky(system, user):
            if len(asked) == 2:
                raise ModelNotSelected()
            asked.append(user)
            return respond(system, user)

        generator = FakeGenerator(flaky)
        engine = self._engine(store, tmp_path, generator, learn_batch_size=2)
        with pytest.raises(ModelNotSelected):
            engine.sync()

        saved = MappingStore(tmp_path / "taxonomy.json").load()
        assert set(saved) == set(tags[:4])

        generator.responder = respond
        generator.calls.clear()
        engine.sync()

        assert len(generator.calls) == 1
        assert "Obscure-Topic-0" not in generator.calls[0]["user"]
        assert "Obscure-Topic-5" in generator.calls[0]["user"]

    def test_learning_progress_events(self, store, tmp_path, add_items):
        add_items(store, "/lib/a.epub")
        store.update_content("/lib/a.epub", tags="Alpha-Topic, Beta-Topic, Gamma-Topic, 1990s", summary="s")
        generator = FakeGenerator(_classify_all("Travel"))
        events = []

        self._engine(store, tmp_path, generator, learn_batch_size=2).sync(events.append)

        learning = [e.data for e in events if e.type == "progress_learning"]
        assert learning == [
            {"processedGlobal": 3, "totalGlobal": 4},
            {"processedGlobal": 4, "totalGlobal": 4},
        ]
        assert events[0].data == {"totalTags": 4}

    def test_malformed_batch_skipped(self, store, tmp_path, add_items):
        add_items(store, "/lib/a.epub")
        store.update_content("/lib/a.epub", tags="Alpha-Topic", summary="s")
        generator = FakeGenerator(lambda s, u: "not json")

        self._engine(store, tmp_path, generator).sync()

        assert MappingStore(tmp_path / "taxonomy.json").load() == {}
        assert store.get("/lib/a.epub").master_tags in (None, "")

    def test_near_duplicates_not_relearned(self, store, tmp_path, add_items):
        MappingStore(tmp_path / "taxonomy.json").save({"Space-Opera": "Science-Fiction"})
        add_items(store, "/lib/a.epub")
        store.update_content("/lib/a.epub", tags="space opera", summary="s")
        generator = FakeGenerator()

        self._engine(store, tmp_path, generator).sync()

        assert generator.calls == []
        assert store.get("/lib/a.epub").master_tags == "Fiction, Science-Fiction"

    def test_sentinel_items_ignored(self, store, tmp_path, add_items):
        add_items(store, "/lib/bad.epub")
        store.update_content("/lib/bad.epub", tags="Error: Parsing timed out (15s)", summary="x")
        generator = FakeGenerator()
        engine = self._engine(store, tmp_path, generator)

        assert engine.collect_tags() == []
        assert engine.sync() == 0

    def test_batch_size_bounded_by_context(self, store, tmp_path):
        engine = self._engine(store, tmp_path, FakeGenerator(context_size=2048), learn_batch_size=500)
        assert engine.batch_size() == (2048 - 512) // 18
        engine = self._engine(store, tmp_path, FakeGenerator(context_size=0), learn_batch_size=500)
        assert engine.batch_size() == 500


class TestMaintenance:

    def test_re_evaluate_resets_items(self, store, tmp_path, add_items):
        add_items(store, "/lib/a.epub", "/lib/b.epub")
        store.update_content("/lib/a.epub", tags="Sci-Fi, Robots", summary="s")
        store.update_content("/lib/b.epub", tags="Cooking", summary="s")
        engine = TaxonomyEngine(store, FakeGenerator(), MappingStore(tmp_path / "t.json"))

        assert engine.re_evaluate("sci fi") == 1
        item = store.get("/lib/a.epub")
        assert (item.tags, item.summary, item.content_scanned) == (None, None, False)
        assert [i.filepath for i in store.find_unprocessed()] == ["/lib/a.epub"]

    def test_apply_implications(self, store, tmp_path, add_items):
        add_items(store, "/lib/a.epub", "/lib/b.epub", "/lib/c.epub")
        store.update_content("/lib/a.epub", tags="Machine-Learning", summary="s")
        store.update_content("/lib/b.epub", tags="Machine-Learning, Artificial-Intelligence", summary="s")
        store.update_content("/lib/c.epub", tags="Cooking", summary="s")
        engine = TaxonomyEngine(store, FakeGenerator(), MappingStore(tmp_path / "t.json"))

        changes, applied = engine.apply_implications("Machine-Learning -> Artificial-Intelligence")

        assert changes == 1
        assert applied == ["Machine-Learning -> Artificial-Intelligence (1 books)"]
        assert store.get("/lib/a.epub").tags == "Machine-Learning, Artificial-Intelligence"
        assert store.get("/lib/c.epub").tags == "Cooking"
