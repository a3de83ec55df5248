"""Unit tests for store.py - In-memory resource store, selectors and merge patch."""

import pytest

from events import EventType
from resources import OwnerReference, Resource
from store import (
    InMemoryResourceStore,
    LabelSelector,
    ResourceConflictError,
    ResourceNotFoundError,
    StoreOperation,
    merge_patch,
)


class TestMergePatch:
    def test_nested_merge_and_removal(self):
        target = {"a": 1, "b": {"c": 2, "d": 3}, "e": 4}
        patch = {"b": {"c": 20, "d": None}, "e": None, "f": [1]}

        result = merge_patch(target, patch)

        assert result == {"a": 1, "b": {"c": 20}, "f": [1]}
        # Target untouched
        assert target["b"] == {"c": 2, "d": 3}

    def test_replaces_non_dict_with_dict(self):
        assert merge_patch({"a": 1}, {"a": {"b": 2}}) == {"a": {"b": 2}}


class TestLabelSelector:
    @pytest.mark.parametrize(
        "selector,labels,expected",
        [
            ("", {"a": "1"}, True),
            (None, {}, True),
            ("app=site1", {"app": "site1"}, True),
            ("app==site1", {"app": "site1"}, True),
            ("app=site1", {"app": "site2"}, False),
            ("app!=site1", {"app": "site2"}, True),
            ("app!=site1", {}, True),
            ("app!=site1", {"app": "site1"}, False),
            ("app", {"app": "x"}, True),
            ("app", {}, False),
            ("!low-level", {}, True),
            ("!low-level", {"low-level": "true"}, False),
            ("app=site1, tier=web", {"app": "site1", "tier": "web"}, True),
            ("app=site1,tier=web", {"app": "site1"}, False),
        ],
    )
    def test_matches(self, selector, labels, expected):
        assert LabelSelector.parse(selector).matches(labels) is expected

    @pytest.mark.parametrize("selector", ["=value", "!", "!=x"])
    def test_empty_key_rejected(self, selector):
        with pytest.raises(ValueError):
            LabelSelector.parse(selector)

    def test_str(self):
        selector = LabelSelector.parse("app==site1, tier!=db, ready, !low-level")
        assert str(selector) == "app=site1,tier!=db,ready,!low-level"


def config_map(name="site1-html", namespace="ns1", **kwargs):
    return Resource(kind="ConfigMap", name=name, namespace=namespace, **kwargs)


@pytest.mark.asyncio
class TestInMemoryResourceStore:
    """Tests for InMemoryResourceStore."""

    async def test_create_assigns_server_fields(self, store):
        created = await store.create(config_map(data={"index.html": "x"}))

        assert created.uid
        assert created.resource_version == 1
        assert created.data == {"index.html": "x"}

    async def test_create_duplicate_conflicts(self, store):
        await store.create(config_map())

        with pytest.raises(ResourceConflictError):
            await store.create(config_map())

    async def test_same_name_different_namespace_or_kind(self, store):
        await store.create(config_map(namespace="ns1"))
        await store.create(config_map(namespace="ns2"))
        await store.create(Resource(kind="Service", name="site1-html", namespace="ns1"))

        assert len(await store.list("ConfigMap")) == 2
        assert len(await store.list("ConfigMap", namespace="ns1")) == 1

    async def test_get_returns_copy(self, store):
        await store.create(config_map(data={"index.html": "x"}))

        fetched = await store.get("ConfigMap", "site1-html", "ns1")
        fetched.data["index.html"] = "mutated"

        again = await store.get("ConfigMap", "site1-html", "ns1")
        assert again.data == {"index.html": "x"}

    async def test_get_missing(self, store):
        assert await store.get("ConfigMap", "nope", "ns1") is None

    async def test_list_with_selector(self, store):
        await store.create(config_map(name="a", labels={"app": "a"}))
        await store.create(config_map(name="b", labels={"app": "b"}))

        result = await store.list("ConfigMap", label_selector="app=b")

        assert [r.name for r in result] == ["b"]

    async def test_update_leaves_status_alone(self, store):
        created = await store.create(config_map(data={"k": "v"}, status={"ok": True}))
        created.data = {"k": "v2"}
        created.status = {"ok": False}

        updated = await store.update(created)

        assert updated.data == {"k": "v2"}
        assert updated.status == {"ok": True}
        assert updated.resource_version == 2

    async def test_update_status_only_touches_status(self, store):
        created = await store.create(config_map(data={"k": "v"}))
        created.data = {"k": "ignored"}
        created.status = {"healthy": True}

        updated = await store.update_status(created)

        assert updated.data == {"k": "v"}
        assert updated.status == {"healthy": True}

    async def test_stale_version_conflicts(self, store):
        created = await store.create(config_map())
        await store.update(created)

        with pytest.raises(ResourceConflictError):
            await store.update(created)

    async def test_unversioned_write_skips_check(self, store):
        created = await store.create(config_map())
        await store.update(created)
        created.resource_version = None

        updated = await store.update(created)

        assert updated.resource_version == 3

    async def test_update_missing_raises(self, store):
        with pytest.raises(ResourceNotFoundError):
            await store.update(config_map())

    async def test_patch_merges(self, store):
        await store.create(
            config_map(data={"a": "1", "b": "2"}, labels={"app": "x"})
        )

        patched = await store.patch(
            config_map(data={"b": None, "c": "3"}, labels={"tier": "web"})
        )

        assert patched.data == {"a": "1", "c": "3"}
        assert patched.labels == {"app": "x", "tier": "web"}

    async def test_patch_keeps_owner_references_when_omitted(self, store):
        owner = OwnerReference(kind="WebPage", name="site1")
        await store.create(config_map(owner_references=[owner]))

        patched = await store.patch(config_map(data={"a": "1"}))

        assert patched.owner_references == [owner]

    async def test_patch_status_merges(self, store):
        await store.create(config_map(status={"healthy": True, "errorMessage": "x"}))

        patched = await store.patch_status(config_map(status={"errorMessage": None}))

        assert patched.status == {"healthy": True}

    async def test_delete(self, store):
        await store.create(config_map())

        assert await store.delete("ConfigMap", "site1-html", "ns1") is True
        assert await store.delete("ConfigMap", "site1-html", "ns1") is False
        assert await store.get("ConfigMap", "site1-html", "ns1") is None

    async def test_delete_by_selector_scoped_to_namespace(self, store):
        for name, ns in [("p1", "ns1"), ("p2", "ns1"), ("p3", "ns2")]:
            await store.create(
                Resource(kind="Pod", name=name, namespace=ns, labels={"app": "site1"})
            )
        await store.create(
            Resource(kind="Pod", name="other", namespace="ns1", labels={"app": "x"})
        )

        deleted = await store.delete_by_selector("Pod", "ns1", "app=site1")

        assert deleted == 2
        remaining = {(r.namespace, r.name) for r in await store.list("Pod")}
        assert remaining == {("ns2", "p3"), ("ns1", "other")}

    async def test_history(self, store):
        created = await store.create(config_map())
        await store.get("ConfigMap", "site1-html", "ns1")
        await store.update(created)

        assert store.operations(verb="create") == [
            StoreOperation("create", "ConfigMap", "site1-html", "ns1")
        ]
        assert [op.verb for op in store.operations(kind="ConfigMap")] == [
            "create",
            "get",
            "update",
        ]

        store.clear_history()
        assert store.history == []

    async def test_seed_is_not_recorded(self, store):
        seeded = store.seed(config_map())

        assert seeded.resource_version == 1
        assert seeded.uid
        assert store.history == []
        assert await store.get("ConfigMap", "site1-html", "ns1") == seeded

    async def test_publishes_events(self, event_bus):
        store = InMemoryResourceStore(event_bus=event_bus)
        _, subscription = await event_bus.subscribe()

        created = await store.create(config_map())
        await store.update_status(created)
        await store.delete("ConfigMap", "site1-html", "ns1")

        types = [
            (await subscription.__anext__()).event_type for _ in range(3)
        ]
        assert types == [EventType.CREATED, EventType.MODIFIED, EventType.DELETED]
