"""Unit tests for ObjectStore and StoreDelta."""

from __future__ import annotations

import threading

from hypothesis import given, settings
from hypothesis import strategies as st

from kubemirror.cache.store import ObjectStore
from kubemirror.models.resources import Resource


def _obj(name: str, rv: str = "1", namespace: str = "default", **fields: object) -> Resource:
    obj = Resource({"metadata": {"name": name, "namespace": namespace, "resourceVersion": rv}})
    obj.update(fields)
    return obj


class TestObjectStore:
    def test_upsert_and_get(self) -> None:
        store = ObjectStore()

        assert store.upsert(_obj("a")) is None
        previous = store.upsert(_obj("a", rv="2"))

        assert previous is not None and previous.resource_version == "1"
        assert store.get("default/a").resource_version == "2"  # type: ignore[union-attr]
        assert len(store) == 1
        assert "default/a" in store

    def test_get_missing_returns_none(self) -> None:
        store = ObjectStore()

        assert store.get("default/nope") is None
        assert store.resource_version("default/nope") is None

    def test_delete_by_key(self) -> None:
        store = ObjectStore()
        store.upsert(_obj("a"))

        removed = store.delete(_obj("a", rv="9"))

        assert removed is not None
        assert len(store) == 0
        assert store.delete(_obj("a")) is None

    def test_reads_and_writes_are_copies(self) -> None:
        store = ObjectStore()
        original = _obj("a", spec={"replicas": 1})
        store.upsert(original)
        original["spec"]["replicas"] = 5

        listed = store.list()[0]
        listed["spec"]["replicas"] = 7

        assert store.get("default/a")["spec"] == {"replicas": 1}  # type: ignore[index]

    def test_replace_reports_delta(self) -> None:
        store = ObjectStore()
        store.upsert(_obj("keep", rv="1"))
        store.upsert(_obj("change", rv="1"))
        store.upsert(_obj("gone", rv="1"))

        delta = store.replace([_obj("keep", rv="1"), _obj("change", rv="2"), _obj("new", rv="3")])

        assert delta.added == ["default/new"]
        assert delta.modified == ["default/change"]
        assert delta.deleted == ["default/gone"]
        assert delta.changed
        assert sorted(store.keys()) == ["default/change", "default/keep", "default/new"]

    def test_replace_with_identical_contents_is_unchanged(self) -> None:
        store = ObjectStore()
        store.upsert(_obj("a", rv="1"))

        delta = store.replace([_obj("a", rv="1")])

        assert not delta.changed

    def test_concurrent_readers_and_writer(self) -> None:
        store = ObjectStore()
        errors: list[BaseException] = []

        def writer() -> None:
            for i in range(200):
                store.upsert(_obj(f"o{i % 10}", rv=str(i)))

        def reader() -> None:
            try:
                for _ in range(200):
                    for obj in store.list():
                        assert obj.name.startswith("o")
            except BaseException as exc:  # noqa: BLE001
                errors.append(exc)

        threads = [threading.Thread(target=writer)] + [threading.Thread(target=reader) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(store) == 10


_names = st.sets(st.sampled_from(["a", "b", "c", "d", "e"]))
_versions = st.sampled_from(["1", "2"])


@settings(max_examples=100)
@given(before=st.dictionaries(st.sampled_from(list("abcde")), _versions), after=_names, rv=_versions)
def test_replace_delta_partitions_keys(before: dict[str, str], after: set[str], rv: str) -> None:
    """Every key ends up in exactly one of added/modified/deleted/unchanged."""
    store = ObjectStore()
    for name, version in before.items():
        store.upsert(_obj(name, rv=version))

    delta = store.replace([_obj(name, rv=rv) for name in after])

    before_keys = {f"default/{n}" for n in before}
    after_keys = {f"default/{n}" for n in after}
    assert set(delta.added) == after_keys - before_keys
    assert set(delta.deleted) == before_keys - after_keys
    assert set(delta.modified) == {f"default/{n}" for n in after if n in before and before[n] != rv}
    assert set(store.keys()) == after_keys
