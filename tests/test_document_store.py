"""Tests for the SQLite document store."""

import pytest

from cubesat.docstore import DocumentStore, new_rev, parse_rev
from cubesat.errors import InvalidDocument, InvalidQuery, NotFound, RevisionConflict


@pytest.fixture
def store():
    """Create an in-memory document store."""
    s = DocumentStore(":memory:", name="test")
    s.connect()
    yield s
    s.close()


@pytest.fixture
def characters(store):
    for doc in [
        {"_id": "mario", "name": "Mario", "team": "Mushroom", "power": 7, "tags": ["jump", "fire"]},
        {"_id": "luigi", "name": "Luigi", "team": "Mushroom", "power": 6, "tags": ["jump"]},
        {"_id": "bowser", "name": "Bowser", "team": "Koopa", "power": 9, "home": {"castle": "Dark"}},
    ]:
        store.upsert(doc)
    return store


class TestRevisions:
    """Tests for revision strings."""

    def test_parse_rev(self):
        assert parse_rev("12-abc") == (12, "abc")

    @pytest.mark.parametrize("rev", ["", "abc", "0-abc", "-1-abc", "1-", 3, None])
    def test_parse_rev_invalid(self, rev):
        with pytest.raises(InvalidDocument):
            parse_rev(rev)

    def test_new_rev_generation(self):
        first = new_rev(None, {"a": 1}, deleted=False)
        second = new_rev(first, {"a": 2}, deleted=False)

        assert first.startswith("1-")
        assert second.startswith("2-")

    def test_new_rev_depends_on_content(self):
        assert new_rev(None, {"a": 1}, False) != new_rev(None, {"a": 2}, False)
        assert new_rev(None, {"a": 1}, False) == new_rev(None, {"a": 1}, False)


class TestUpsert:
    """Tests for checked writes."""

    def test_insert_assigns_id(self, store):
        result = store.upsert({"name": "Toad"})

        assert result.id
        assert result.rev.startswith("1-")
        assert store.get(result.id) == {"_id": result.id, "_rev": result.rev, "name": "Toad"}

    def test_insert_with_id(self, store):
        result = store.upsert({"_id": "peach", "name": "Peach"})
        assert result.id == "peach"
        assert result.to_dict() == {"ok": True, "id": "peach", "rev": result.rev}

    def test_update_requires_current_rev(self, store):
        first = store.upsert({"_id": "peach", "name": "Peach"})

        with pytest.raises(RevisionConflict):
            store.upsert({"_id": "peach", "name": "Daisy"})

        second = store.upsert({"_id": "peach", "_rev": first.rev, "name": "Daisy"})
        assert second.rev.startswith("2-")
        assert store.get("peach")["name"] == "Daisy"

    def test_stale_rev_conflicts(self, store):
        first = store.upsert({"_id": "peach", "v": 1})
        store.upsert({"_id": "peach", "_rev": first.rev, "v": 2})

        with pytest.raises(RevisionConflict):
            store.upsert({"_id": "peach", "_rev": first.rev, "v": 3})

    def test_rev_for_unknown_doc_conflicts(self, store):
        with pytest.raises(RevisionConflict):
            store.upsert({"_id": "ghost", "_rev": "1-abc"})

    def test_recreate_after_delete_continues_generation(self, store):
        first = store.upsert({"_id": "peach", "v": 1})
        store.remove("peach", first.rev)

        again = store.upsert({"_id": "peach", "v": 2})

        assert again.rev.startswith("3-")
        assert store.get("peach")["v"] == 2

    def test_deleted_flag_not_stored(self, store):
        result = store.upsert({"_id": "peach", "_deleted": False, "v": 1})
        assert "_deleted" not in store.get(result.id)


class TestRemove:
    """Tests for checked deletes."""

    def test_remove(self, store):
        first = store.upsert({"_id": "peach"})
        result = store.remove("peach", first.rev)

        assert result.rev.startswith("2-")
        with pytest.raises(NotFound):
            store.get("peach")

    def test_remove_missing(self, store):
        with pytest.raises(NotFound):
            store.remove("ghost", "1-abc")

    def test_remove_twice(self, store):
        first = store.upsert({"_id": "peach"})
        store.remove("peach", first.rev)

        with pytest.raises(NotFound):
            store.remove("peach", first.rev)

    def test_remove_stale_rev(self, store):
        first = store.upsert({"_id": "peach", "v": 1})
        store.upsert({"_id": "peach", "_rev": first.rev, "v": 2})

        with pytest.raises(RevisionConflict):
            store.remove("peach", first.rev)
        assert store.get("peach")["v"] == 2


class TestBulkUpsert:
    """Tests for replication writes."""

    def test_records_given_revision(self, store):
        results = store.bulk_upsert_no_conflict_check([{"_id": "a", "_rev": "4-abc", "v": 1}])

        assert results[0].applied
        assert store.get("a") == {"_id": "a", "_rev": "4-abc", "v": 1}

    def test_is_idempotent(self, store):
        doc = {"_id": "a", "_rev": "1-abc", "v": 1}

        assert store.bulk_upsert_no_conflict_check([doc])[0].applied
        assert not store.bulk_upsert_no_conflict_check([doc])[0].applied
        assert store.revisions("a") == ["1-abc"]

    def test_requires_id(self, store):
        with pytest.raises(InvalidDocument):
            store.bulk_upsert_no_conflict_check([{"_rev": "1-abc"}])

    def test_requires_valid_rev(self, store):
        with pytest.raises(InvalidDocument):
            store.bulk_upsert_no_conflict_check([{"_id": "a"}])

    def test_winner_does_not_depend_on_arrival_order(self):
        """Test that replicas recording the same revisions agree."""
        revisions = [
            {"_id": "a", "_rev": "1-xyz", "v": "base"},
            {"_id": "a", "_rev": "2-aaa", "v": "left"},
            {"_id": "a", "_rev": "2-bbb", "v": "right"},
        ]
        first = DocumentStore(":memory:")
        second = DocumentStore(":memory:")

        first.bulk_upsert_no_conflict_check(revisions)
        second.bulk_upsert_no_conflict_check(list(reversed(revisions)))

        assert first.get("a") == second.get("a") == {"_id": "a", "_rev": "2-bbb", "v": "right"}

    def test_older_revision_does_not_replace_winner(self, store):
        store.bulk_upsert_no_conflict_check([{"_id": "a", "_rev": "3-abc", "v": 3}])
        store.bulk_upsert_no_conflict_check([{"_id": "a", "_rev": "2-abc", "v": 2}])

        assert store.get("a")["v"] == 3

    def test_apply_tombstone(self, store):
        store.bulk_upsert_no_conflict_check([{"_id": "a", "_rev": "1-abc", "v": 1}])

        result = store.apply_tombstone("a", "2-def")

        assert result.applied
        with pytest.raises(NotFound):
            store.get("a")

    def test_older_tombstone_loses(self, store):
        store.bulk_upsert_no_conflict_check([{"_id": "a", "_rev": "3-abc", "v": 3}])
        store.apply_tombstone("a", "2-def")

        assert store.get("a")["v"] == 3

    def test_tombstone_for_unknown_doc(self, store):
        store.apply_tombstone("a", "2-def")

        with pytest.raises(NotFound):
            store.get("a")
        assert store.scan()["rows"] == []


class TestGet:
    """Tests for reading documents."""

    def test_get_missing(self, store):
        with pytest.raises(NotFound):
            store.get("ghost")

    def test_get_specific_revision(self, store):
        first = store.upsert({"_id": "peach", "v": 1})
        store.upsert({"_id": "peach", "_rev": first.rev, "v": 2})

        assert store.get("peach", rev=first.rev)["v"] == 1

    def test_get_unknown_revision(self, store):
        store.upsert({"_id": "peach"})
        with pytest.raises(NotFound):
            store.get("peach", rev="9-zzz")

    def test_revisions_newest_first(self, store):
        first = store.upsert({"_id": "peach", "v": 1})
        second = store.upsert({"_id": "peach", "_rev": first.rev, "v": 2})

        assert store.revisions("peach") == [second.rev, first.rev]


class TestScan:
    """Tests for listing documents."""

    def test_scan_sorted_by_id(self, characters):
        result = characters.scan()

        assert result["total_rows"] == 3
        assert [r["id"] for r in result["rows"]] == ["bowser", "luigi", "mario"]
        assert result["rows"][0]["doc"]["name"] == "Bowser"
        assert result["rows"][0]["value"]["rev"] == result["rows"][0]["doc"]["_rev"]

    def test_scan_without_docs(self, characters):
        rows = characters.scan(include_docs=False)["rows"]
        assert all("doc" not in r for r in rows)

    def test_scan_keys(self, characters):
        rows = characters.scan(keys=["mario", "toad"])["rows"]

        assert rows[0]["id"] == "mario"
        assert rows[1] == {"key": "toad", "error": "not_found"}

    def test_scan_limit_skip(self, characters):
        result = characters.scan(limit=1, skip=1)

        assert result["offset"] == 1
        assert [r["id"] for r in result["rows"]] == ["luigi"]

    def test_scan_range(self, characters):
        rows = characters.scan(startkey="c", endkey="m")["rows"]
        assert [r["id"] for r in rows] == ["luigi"]

    def test_scan_descending(self, characters):
        rows = characters.scan(descending=True, startkey="m", endkey="c")["rows"]
        assert [r["id"] for r in rows] == ["luigi"]

        rows = characters.scan(descending=True)["rows"]
        assert [r["id"] for r in rows] == ["mario", "luigi", "bowser"]

    def test_scan_skips_deleted(self, characters):
        characters.remove("mario", characters.get("mario")["_rev"])
        assert [r["id"] for r in characters.scan()["rows"]] == ["bowser", "luigi"]


class TestFind:
    """Tests for selector queries."""

    def test_find_equality(self, characters):
        docs = characters.find({"selector": {"team": {"$eq": "Mushroom"}}})["docs"]
        assert {d["name"] for d in docs} == {"Mario", "Luigi"}

    def test_find_implicit_equality(self, characters):
        docs = characters.find({"selector": {"team": "Koopa"}})["docs"]
        assert [d["_id"] for d in docs] == ["bowser"]

    def test_find_sort_limit_skip(self, characters):
        docs = characters.find({
            "selector": {"power": {"$gt": 0}},
            "sort": [{"power": "desc"}],
            "limit": 2,
            "skip": 1,
        })["docs"]

        assert [d["_id"] for d in docs] == ["mario", "luigi"]

    def test_find_fields(self, characters):
        docs = characters.find({
            "selector": {"_id": "bowser"},
            "fields": ["name", "home.castle"],
        })["docs"]

        assert docs == [{"name": "Bowser", "home": {"castle": "Dark"}}]

    def test_find_excludes_design_docs(self, characters):
        characters.upsert({"_id": "_design/test", "team": "Mushroom"})

        docs = characters.find({"selector": {"team": "Mushroom"}})["docs"]

        assert len(docs) == 2

    def test_find_invalid_request(self, characters):
        with pytest.raises(InvalidQuery):
            characters.find({"fields": ["a"]})
        with pytest.raises(InvalidQuery):
            characters.find({"selector": {"team": {"$bogus": 1}}})


class TestIndexes:
    """Tests for secondary indexes."""

    def test_create_index(self, store):
        assert store.create_index(["team"]) == {"result": "created", "name": "idx-team"}
        assert store.create_index(["team"]) == {"result": "exists", "name": "idx-team"}
        assert store.get_indexes() == [{"name": "idx-team", "fields": ["team"]}]

    def test_create_index_named(self, store):
        result = store.create_index(["home.castle"], name="by-castle")
        assert result["name"] == "by-castle"

    @pytest.mark.parametrize("fields", [[], ["bad field"], ["a;DROP TABLE docs"], [1]])
    def test_create_index_invalid(self, store, fields):
        with pytest.raises(InvalidQuery):
            store.create_index(fields)

    def test_find_uses_index(self, characters):
        """Test that indexed lookups return the same docs as a full scan."""
        selector = {"team": "Mushroom", "power": {"$gte": 7}}
        before = characters.find({"selector": selector})["docs"]

        characters.create_index(["team"])
        after = characters.find({"selector": selector})["docs"]

        assert before == after
        assert [d["_id"] for d in after] == ["mario"]

    def test_indexed_find_skips_deleted(self, characters):
        characters.create_index(["team"])
        characters.remove("luigi", characters.get("luigi")["_rev"])

        docs = characters.find({"selector": {"team": {"$eq": "Mushroom"}}})["docs"]

        assert [d["_id"] for d in docs] == ["mario"]

    def test_delete_index(self, store):
        store.create_index(["team"])
        store.delete_index("idx-team")

        assert store.get_indexes() == []
        with pytest.raises(NotFound):
            store.delete_index("idx-team")


class TestViews:
    """Tests for map/reduce views."""

    def test_callable_map(self, characters):
        def by_power(doc, emit):
            if "power" in doc:
                emit(doc["power"], doc["name"])

        result = characters.query(by_power)

        assert result["total_rows"] == 3
        assert [r["key"] for r in result["rows"]] == [6, 7, 9]
        assert result["rows"][0] == {"id": "luigi", "key": 6, "value": "Luigi"}

    def test_design_doc_count(self, characters):
        characters.upsert({
            "_id": "_design/test",
            "views": {"mushroom": {"map": {"selector": {"team": "Mushroom"}}, "reduce": "_count"}},
        })

        result = characters.query("test/mushroom")

        assert result["rows"] == [{"key": None, "value": 2}]

    def test_design_doc_without_reduce(self, characters):
        characters.upsert({
            "_id": "_design/test",
            "views": {"names": {"map": {"key": "name"}}},
        })

        result = characters.query("test/names", include_docs=True)

        assert [r["key"] for r in result["rows"]] == ["Bowser", "Luigi", "Mario"]
        assert result["rows"][0]["doc"]["_id"] == "bowser"

    def test_reduce_false_returns_map_rows(self, characters):
        view = {"map": {"selector": {"team": "Mushroom"}}, "reduce": "_count"}
        result = characters.query(view, reduce=False)

        assert len(result["rows"]) == 2

    def test_group_sum(self, characters):
        view = {"map": {"key": "team", "value": "power"}, "reduce": "_sum"}

        result = characters.query(view, group=True)

        assert result["rows"] == [
            {"key": "Koopa", "value": 9},
            {"key": "Mushroom", "value": 13},
        ]

    def test_stats(self, characters):
        view = {"map": {"key": "team", "value": "power"}, "reduce": "_stats"}

        value = characters.query(view)["rows"][0]["value"]

        assert value == {"sum": 22, "count": 3, "min": 6, "max": 9, "sumsqr": 166}

    def test_key_filter(self, characters):
        view = {"map": {"key": "team"}}
        rows = characters.query(view, key="Koopa")["rows"]
        assert [r["id"] for r in rows] == ["bowser"]

    def test_descending_range(self, characters):
        view = {"map": {"key": "power"}}
        rows = characters.query(view, descending=True, startkey=8, endkey=6)["rows"]
        assert [r["key"] for r in rows] == [7, 6]

    def test_custom_reduce(self, characters):
        view = {
            "map": {"key": "team", "value": "name"},
            "reduce": lambda keys, values: sorted(values),
        }
        rows = characters.query(view, group=True, key="Mushroom")["rows"]
        assert rows == [{"key": "Mushroom", "value": ["Luigi", "Mario"]}]

    def test_unknown_view(self, characters):
        with pytest.raises(NotFound):
            characters.query("missing/view")

        characters.upsert({"_id": "_design/test", "views": {}})
        with pytest.raises(NotFound):
            characters.query("test/nothing")

    def test_bad_view_path(self, characters):
        with pytest.raises(InvalidQuery):
            characters.query("no-slash")

    def test_unknown_reducer(self, characters):
        with pytest.raises(InvalidQuery):
            characters.query({"map": {"key": "team"}, "reduce": "_median"})

    def test_sum_requires_numbers(self, characters):
        with pytest.raises(InvalidQuery):
            characters.query({"map": {"key": "team", "value": "name"}, "reduce": "_sum"})


class TestStats:
    """Tests for store statistics."""

    def test_get_stats(self, characters):
        characters.remove("mario", characters.get("mario")["_rev"])
        characters.create_index(["team"])

        stats = characters.get_stats()

        assert stats["name"] == "test"
        assert stats["doc_count"] == 2
        assert stats["deleted_count"] == 1
        assert stats["revision_count"] == 4
        assert stats["index_count"] == 1
