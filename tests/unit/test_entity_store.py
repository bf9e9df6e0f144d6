"""
Unit tests for the entity store.

Tests cover:
- Upsert creating and merging entities
- Id derivation and client id checks
- Type and kind validation
- Compare-and-set exhaustion and store failures
- Lookup, query and delete
"""

import pytest

from service.entity_server.data import (
    ENTITIES_COLLECTION,
    Entity,
    EntityQuery,
    EntityStore,
    derive_entity_id,
)
from service.entity_server.docstore import (
    DocumentStoreConnectionError,
    InMemoryDocumentStore,
    VersionConflictError,
)
from service.entity_server.errors import (
    ConcurrentModificationError,
    IdentityConflictError,
    IdentityIncompleteError,
    InvalidArgumentError,
    NotFoundError,
    StoreUnavailableError,
    UnknownTypeError,
)
from service.entity_server.schema import (
    EntityType,
    EntityTypeRegistry,
    TypedValue,
    attribute,
    attributes_from_dict,
)

POD = EntityType(
    name="K8S_POD",
    attributes=(
        attribute("external_id", "string", identifying=True),
        attribute("phase", "string"),
    ),
)

CONTAINER = EntityType(
    name="DOCKER_CONTAINER",
    attributes=(attribute("external_id", "string", identifying=True),),
)

METRIC = EntityType(
    name="METRIC",
    attributes=(attribute("score", "double", identifying=True),),
)


class FakeClock:
    def __init__(self, value=1_700_000_000_000):
        self.value = value

    def __call__(self):
        return self.value


class ConflictingStore(InMemoryDocumentStore):
    """Store whose compare-and-set always loses."""

    def __init__(self):
        super().__init__()
        self.replace_calls = 0

    async def replace(self, collection, tenant_id, key, body, expected_version):
        self.replace_calls += 1
        raise VersionConflictError(collection, key, expected_version)


def pod(external_id, **attrs):
    values = {"external_id": TypedValue.string(external_id)}
    values.update({k: TypedValue.of(v) for k, v in attrs.items()})
    return Entity(tenant_id="t1", entity_type="K8S_POD", attributes=values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def store():
    store = InMemoryDocumentStore()
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
async def entities(store, clock):
    registry = EntityTypeRegistry(store, cache_ttl_seconds=0)
    await registry.upsert_type("t1", POD)
    await registry.upsert_type("t1", CONTAINER)
    await registry.upsert_type("t1", METRIC)
    await registry.upsert_type("t2", POD)
    return EntityStore(store, registry, clock=clock)


async def collect(stream):
    return [item async for item in stream]


class TestUpsert:
    """Tests for EntityStore.upsert."""

    @pytest.mark.asyncio
    async def test_create(self, entities, clock):
        """A new entity gets a derived id and timestamps."""
        result = await entities.upsert(pod("pod-a", phase="Running"))

        assert result.entity_id == derive_entity_id(
            "t1", POD, {"external_id": TypedValue.string("pod-a")}
        )
        assert result.created_at == clock.value
        assert result.updated_at == clock.value
        assert result.attributes["phase"] == TypedValue.string("Running")

    @pytest.mark.asyncio
    async def test_merge_is_right_biased(self, entities, clock):
        """Later upserts add and replace attributes."""
        first = await entities.upsert(pod("pod-a", phase="Pending", labels="app=web"))

        clock.value += 1000
        second = await entities.upsert(pod("pod-a", phase="Running"))

        assert second.entity_id == first.entity_id
        assert second.attributes["phase"] == TypedValue.string("Running")
        assert second.attributes["labels"] == TypedValue.string("app=web")
        assert second.created_at == first.created_at
        assert second.updated_at == first.created_at + 1000

    @pytest.mark.asyncio
    async def test_empty_name_keeps_stored_name(self, entities):
        """An empty incoming name does not erase the stored one."""
        named = pod("pod-a")
        named.name = "web-0"
        await entities.upsert(named)

        result = await entities.upsert(pod("pod-a", phase="Running"))

        assert result.name == "web-0"

    @pytest.mark.asyncio
    async def test_matching_client_id_accepted(self, entities):
        """A client id equal to the derived id is accepted."""
        incoming = pod("pod-a")
        incoming.entity_id = derive_entity_id("t1", POD, incoming.attributes)

        result = await entities.upsert(incoming)

        assert result.entity_id == incoming.entity_id

    @pytest.mark.asyncio
    async def test_mismatching_client_id_rejected(self, entities, store):
        """Entity ids are never client-assigned."""
        incoming = pod("pod-a")
        incoming.entity_id = "00000000-0000-0000-0000-000000000000"

        with pytest.raises(InvalidArgumentError, match="does not match"):
            await entities.upsert(incoming)

        assert store.get_document_count(ENTITIES_COLLECTION) == 0

    @pytest.mark.asyncio
    async def test_unknown_type(self, entities):
        """Types must be registered first."""
        incoming = Entity(
            tenant_id="t1",
            entity_type="HOST",
            attributes={"external_id": TypedValue.string("h")},
        )

        with pytest.raises(UnknownTypeError):
            await entities.upsert(incoming)

    @pytest.mark.asyncio
    async def test_type_registered_in_other_tenant_only(self, entities):
        """Registration is per tenant."""
        incoming = Entity(
            tenant_id="t2",
            entity_type="DOCKER_CONTAINER",
            attributes={"external_id": TypedValue.string("c")},
        )

        with pytest.raises(UnknownTypeError):
            await entities.upsert(incoming)

    @pytest.mark.asyncio
    async def test_missing_identifying_attribute(self, entities):
        incoming = Entity(
            tenant_id="t1", entity_type="K8S_POD", attributes={"phase": TypedValue.string("x")}
        )

        with pytest.raises(IdentityIncompleteError):
            await entities.upsert(incoming)

    @pytest.mark.asyncio
    async def test_declared_kind_mismatch(self, entities):
        """Declared non-identifying attributes must have their declared kind."""
        with pytest.raises(InvalidArgumentError, match="phase"):
            await entities.upsert(pod("pod-a", phase=3))

    @pytest.mark.asyncio
    async def test_undeclared_attributes_pass_through(self, entities):
        result = await entities.upsert(pod("pod-a", restarts=2))

        assert result.attributes["restarts"] == TypedValue.int64(2)

    @pytest.mark.asyncio
    async def test_empty_tenant(self, entities):
        incoming = pod("pod-a")
        incoming.tenant_id = ""

        with pytest.raises(InvalidArgumentError):
            await entities.upsert(incoming)

    @pytest.mark.asyncio
    async def test_identity_conflict(self, entities, store):
        """A stored record with different identifying values is a collision."""
        created = await entities.upsert(pod("pod-a"))
        doc = await store.get(ENTITIES_COLLECTION, "t1", created.entity_id)
        body = dict(doc.body)
        body["attributes"] = {"external_id": {"kind": "string", "value": "pod-z"}}
        await store.replace(ENTITIES_COLLECTION, "t1", created.entity_id, body, doc.version)

        with pytest.raises(IdentityConflictError):
            await entities.upsert(pod("pod-a"))

    @pytest.mark.asyncio
    async def test_non_finite_identifying_double_rejected(self, entities):
        """NaN cannot identify an entity, so the upsert fails before any write."""
        with pytest.raises(InvalidArgumentError):
            attributes = attributes_from_dict({"score": {"kind": "double", "value": float("nan")}})
            await entities.upsert(
                Entity(tenant_id="t1", entity_type="METRIC", attributes=attributes)
            )

        assert await collect(entities.query("t1", EntityQuery(entity_types=("METRIC",)))) == []

    @pytest.mark.asyncio
    async def test_signed_zero_converges(self, entities):
        """0.0 and -0.0 are the same identifying value and merge into one entity."""
        first = await entities.upsert(
            Entity(tenant_id="t1", entity_type="METRIC", attributes={"score": TypedValue.double(0.0)})
        )
        second = await entities.upsert(
            Entity(tenant_id="t1", entity_type="METRIC", attributes={"score": TypedValue.double(-0.0)})
        )

        assert second.entity_id == first.entity_id

    @pytest.mark.asyncio
    async def test_cas_exhaustion(self, clock):
        """Persistent version conflicts end in ConcurrentModificationError."""
        store = ConflictingStore()
        await store.connect()
        registry = EntityTypeRegistry(store, cache_ttl_seconds=0)
        await registry.upsert_type("t1", POD)
        entities = EntityStore(store, registry, clock=clock)
        await entities.upsert(pod("pod-a"))

        with pytest.raises(ConcurrentModificationError) as exc_info:
            await entities.upsert(pod("pod-a", phase="Running"))

        assert exc_info.value.attempts == 5
        assert store.replace_calls == 5

    @pytest.mark.asyncio
    async def test_store_failure_propagates(self, entities, store):
        """Store errors surface unmodified."""
        store.inject_failure(DocumentStoreConnectionError("down"))

        with pytest.raises(StoreUnavailableError) as exc_info:
            await entities.upsert(pod("pod-a"))

        assert exc_info.value.code == "STORE_UNAVAILABLE"


class TestLookup:
    """Tests for get and get_by_identifying_attributes."""

    @pytest.mark.asyncio
    async def test_get_by_id(self, entities):
        created = await entities.upsert(pod("pod-a", phase="Running"))

        fetched = await entities.get("t1", created.entity_id)

        assert fetched == created

    @pytest.mark.asyncio
    async def test_get_missing(self, entities):
        with pytest.raises(NotFoundError) as exc_info:
            await entities.get("t1", "nope")

        assert exc_info.value.resource_type == "entity"

    @pytest.mark.asyncio
    async def test_get_is_tenant_scoped(self, entities):
        """Another tenant never sees the entity."""
        created = await entities.upsert(pod("pod-a"))

        with pytest.raises(NotFoundError):
            await entities.get("t2", created.entity_id)

    @pytest.mark.asyncio
    async def test_get_by_identifying_attributes(self, entities):
        """Lookup by identity matches lookup by id; extra attributes are ignored."""
        created = await entities.upsert(pod("pod-a", phase="Running"))

        fetched = await entities.get_by_identifying_attributes(
            "t1",
            "K8S_POD",
            {"external_id": TypedValue.string("pod-a"), "phase": TypedValue.string("other")},
        )

        assert fetched == created

    @pytest.mark.asyncio
    async def test_get_by_identifying_attributes_missing(self, entities):
        with pytest.raises(NotFoundError):
            await entities.get_by_identifying_attributes(
                "t1", "K8S_POD", {"external_id": TypedValue.string("nope")}
            )


class TestQuery:
    """Tests for EntityStore.query."""

    @pytest.mark.asyncio
    async def test_query_all(self, entities):
        await entities.upsert(pod("pod-a"))
        await entities.upsert(pod("pod-b"))

        results = await collect(entities.query("t1"))

        assert {e.attributes["external_id"].value for e in results} == {"pod-a", "pod-b"}

    @pytest.mark.asyncio
    async def test_query_by_type(self, entities):
        await entities.upsert(pod("pod-a"))
        container = Entity(
            tenant_id="t1",
            entity_type="DOCKER_CONTAINER",
            attributes={"external_id": TypedValue.string("c1")},
        )
        await entities.upsert(container)

        results = await collect(
            entities.query("t1", EntityQuery(entity_types=("DOCKER_CONTAINER",)))
        )

        assert [e.entity_type for e in results] == ["DOCKER_CONTAINER"]

    @pytest.mark.asyncio
    async def test_query_conjunction(self, entities):
        """Every supplied predicate must hold."""
        a = await entities.upsert(pod("pod-a", phase="Running"))
        b = await entities.upsert(pod("pod-b", phase="Pending"))

        query = EntityQuery(
            entity_ids=(a.entity_id, b.entity_id),
            attributes={"phase": (TypedValue.string("Running"),)},
        )
        results = await collect(entities.query("t1", query))

        assert [e.entity_id for e in results] == [a.entity_id]

    @pytest.mark.asyncio
    async def test_attribute_filter_compares_kind(self, entities):
        """A value of another kind never matches."""
        await entities.upsert(pod("pod-a", restarts=1))

        query = EntityQuery(attributes={"restarts": (TypedValue.string("1"),)})

        assert await collect(entities.query("t1", query)) == []

    @pytest.mark.asyncio
    async def test_query_limit(self, entities):
        for i in range(5):
            await entities.upsert(pod(f"pod-{i}"))

        assert len(await collect(entities.query("t1", limit=2))) == 2

    @pytest.mark.asyncio
    async def test_query_is_tenant_scoped(self, entities):
        await entities.upsert(pod("pod-a"))

        assert await collect(entities.query("t2")) == []

    @pytest.mark.asyncio
    async def test_negative_limit(self, entities):
        with pytest.raises(InvalidArgumentError):
            await collect(entities.query("t1", limit=-1))


class TestDelete:
    """Tests for EntityStore.delete."""

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, entities):
        created = await entities.upsert(pod("pod-a"))

        assert await entities.delete("t1", created.entity_id) is True
        assert await entities.delete("t1", created.entity_id) is False
        with pytest.raises(NotFoundError):
            await entities.get("t1", created.entity_id)

    @pytest.mark.asyncio
    async def test_exists_of_type(self, entities):
        assert await entities.exists_of_type("t1", "K8S_POD") is False

        await entities.upsert(pod("pod-a"))

        assert await entities.exists_of_type("t1", "K8S_POD") is True
        assert await entities.exists_of_type("t2", "K8S_POD") is False
