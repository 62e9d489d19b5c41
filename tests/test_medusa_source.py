"""
Unit tests for the Medusa admin API source.

The requests session is mocked; tests check request parameters, record
parsing, inventory scans and HTTP error mapping.
"""

import inspect
import pytest
import requests
from unittest.mock import Mock

from core.exceptions import SourceUnavailableError
from core.models.config import SourceConfig
from core.source.base import ParentKind
from core.source.medusa import MedusaAdminSource
from core.storage.schemas import EntityType

from tests.fixtures.catalog import inventory_variant, product


def response(status_code=200, body=None):
    mock = Mock()
    mock.status_code = status_code
    mock.json.return_value = body if body is not None else {}
    mock.text = str(body)
    return mock


def variant_payload(variant_id, product_id, item_ids, **kwargs):
    data = inventory_variant(variant_id, product_id, item_ids, **kwargs)
    data["product"] = product(product_id) if product_id else None
    return data


@pytest.fixture
def session():
    return Mock(headers={})


@pytest.fixture
def source(session):
    return MedusaAdminSource("http://medusa:9000/", api_key="sk_test", page_size=2, session=session)


def routed(routes):
    """side_effect dispatching GET requests by path"""
    def get(url, params=None, timeout=None):
        path = url.replace("http://medusa:9000", "")
        handler = routes[path]
        return handler(params) if inspect.isfunction(handler) else handler
    return get


class TestConfiguration:
    """Test construction"""

    def test_auth_and_url(self, source, session):
        assert source.base_url == "http://medusa:9000"
        assert session.auth == ("sk_test", "")
        assert source.name == "medusa"

    def test_from_config(self):
        config = SourceConfig(backend="medusa", url="https://shop.example.com", api_key="sk", page_size=50)
        source = MedusaAdminSource.from_config(config)

        assert source.base_url == "https://shop.example.com"
        assert source.page_size == 50


class TestListRecords:
    """Test paged listing"""

    @pytest.mark.asyncio
    async def test_products_page(self, source, session):
        session.get.return_value = response(body={"products": [product("prod_1", skus=["A"])], "count": 1})

        records = await source.list_records(EntityType.PRODUCTS, take=50, skip=100)

        assert records[0].id == "prod_1"
        assert records[0].variants[0].sku == "A"
        url = session.get.call_args.args[0]
        params = session.get.call_args.kwargs["params"]
        assert url == "http://medusa:9000/admin/products"
        assert params["limit"] == 50
        assert params["offset"] == 100
        assert params["order"] == "-created_at,id"
        assert "*categories.parent_category" in params["fields"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("entity_type,key", [
        (EntityType.PRODUCTS, "products"),
        (EntityType.CUSTOMERS, "customers"),
        (EntityType.INVENTORY, "variants"),
    ])
    async def test_paged_listing_breaks_ties_by_id(self, source, session, entity_type, key):
        session.get.return_value = response(body={key: []})

        await source.list_records(entity_type, take=2, skip=4)

        assert session.get.call_args.kwargs["params"]["order"] == "-created_at,id"

    @pytest.mark.asyncio
    async def test_inventory_scan_uses_stable_order(self, source, session):
        session.get.return_value = response(body={"variants": []})

        await source.count_records(EntityType.INVENTORY)

        assert session.get.call_args.kwargs["params"]["order"] == "-created_at,id"

    @pytest.mark.asyncio
    async def test_ids_filter(self, source, session):
        session.get.return_value = response(body={"customers": []})

        await source.list_records(EntityType.CUSTOMERS, take=10, ids=["cus_1", "cus_2"])

        assert session.get.call_args.kwargs["params"]["id[]"] == ["cus_1", "cus_2"]

    @pytest.mark.asyncio
    async def test_empty_ids_short_circuit(self, source, session):
        assert await source.list_records(EntityType.CUSTOMERS, take=10, ids=[]) == []
        session.get.assert_not_called()

    @pytest.mark.asyncio
    async def test_inventory_by_item_id(self, source, session):
        session.get.side_effect = routed({
            "/admin/inventory-items/iitem_1": response(body={
                "inventory_item": {"id": "iitem_1", "variants": [{"id": "variant_1"}, {"id": "variant_2"}]}
            }),
            "/admin/product-variants": lambda params: response(body={
                "variants": [variant_payload(v, "prod_1", ["iitem_1"]) for v in params["id[]"]]
            }),
        })

        variants = await source.get_record(EntityType.INVENTORY, "iitem_1")

        assert variants.id == "variant_1"
        assert variants.product.id == "prod_1"

    @pytest.mark.asyncio
    async def test_inventory_item_not_found(self, source, session):
        session.get.return_value = response(status_code=404)

        assert await source.list_records(EntityType.INVENTORY, take=10, ids=["iitem_gone"]) == []


class TestCountsAndFreshness:
    """Test drift signal reads"""

    @pytest.mark.asyncio
    async def test_count_uses_total(self, source, session):
        session.get.return_value = response(body={"products": [{"id": "prod_1"}], "count": 321})

        assert await source.count_records(EntityType.PRODUCTS) == 321
        assert session.get.call_args.kwargs["params"]["limit"] == 1

    @pytest.mark.asyncio
    async def test_latest_updated_at(self, source, session):
        session.get.return_value = response(body={
            "customers": [{"id": "cus_1", "updated_at": "2024-01-01T00:00:00.000Z"}]
        })

        assert await source.latest_updated_at(EntityType.CUSTOMERS) == 1_704_067_200_000
        assert session.get.call_args.kwargs["params"]["order"] == "-updated_at"

    @pytest.mark.asyncio
    async def test_latest_updated_at_empty(self, source, session):
        session.get.return_value = response(body={"products": []})
        assert await source.latest_updated_at(EntityType.PRODUCTS) is None

    @pytest.mark.asyncio
    async def test_inventory_count_scans_links(self, source, session):
        pages = [
            [variant_payload("variant_1", "prod_1", ["iitem_1", "iitem_2"]),
             variant_payload("variant_2", "prod_1", ["iitem_2"])],
            [variant_payload("variant_3", None, ["iitem_3"], updated=1_800_000_000_000)],
        ]
        session.get.side_effect = lambda url, params=None, timeout=None: response(
            body={"variants": pages[params["offset"] // 2]}
        )

        assert await source.count_records(EntityType.INVENTORY) == 2
        assert await source.latest_updated_at(EntityType.INVENTORY) == 1_700_000_000_000


class TestParentResolution:
    """Test variant and location level resolution"""

    @pytest.mark.asyncio
    async def test_variant_to_product(self, source, session):
        session.get.return_value = response(body={"variants": [{"id": "variant_1", "product_id": "prod_9"}]})

        assert await source.resolve_parent_id(ParentKind.VARIANT, "variant_1") == "prod_9"

    @pytest.mark.asyncio
    async def test_missing_variant(self, source, session):
        session.get.return_value = response(body={"variants": []})
        assert await source.resolve_parent_id(ParentKind.VARIANT, "variant_gone") is None

    @pytest.mark.asyncio
    async def test_level_scan_is_cached(self, source, session):
        pages = [
            [{"id": "iitem_1", "location_levels": [{"id": "ilev_1"}]},
             {"id": "iitem_2", "location_levels": [{"id": "ilev_2"}, {"id": "ilev_3"}]}],
            [{"id": "iitem_3", "location_levels": [{"id": "ilev_4"}]}],
        ]
        session.get.side_effect = lambda url, params=None, timeout=None: response(
            body={"inventory_items": pages[params["offset"] // 2]}
        )

        assert await source.resolve_parent_id(ParentKind.INVENTORY_LEVEL, "ilev_4") == "iitem_3"
        calls = session.get.call_count
        assert await source.resolve_parent_id(ParentKind.INVENTORY_LEVEL, "ilev_3") == "iitem_2"
        assert session.get.call_count == calls

    @pytest.mark.asyncio
    async def test_unknown_level(self, source, session):
        session.get.return_value = response(body={"inventory_items": []})
        assert await source.resolve_parent_id(ParentKind.INVENTORY_LEVEL, "ilev_x") is None


class TestErrors:
    """Test HTTP failure mapping"""

    @pytest.mark.asyncio
    async def test_server_error(self, source, session):
        session.get.return_value = response(status_code=503, body={"message": "down"})

        with pytest.raises(SourceUnavailableError, match="HTTP 503"):
            await source.count_records(EntityType.PRODUCTS)

    @pytest.mark.asyncio
    async def test_connection_error(self, source, session):
        session.get.side_effect = requests.exceptions.ConnectionError("refused")

        with pytest.raises(SourceUnavailableError):
            await source.list_records(EntityType.PRODUCTS, take=10)

    @pytest.mark.asyncio
    async def test_timeout(self, source, session):
        session.get.side_effect = requests.exceptions.Timeout()

        with pytest.raises(SourceUnavailableError, match="Timeout"):
            await source.list_records(EntityType.CUSTOMERS, take=10)

    @pytest.mark.asyncio
    async def test_invalid_json(self, source, session):
        bad = response()
        bad.json.side_effect = ValueError("no json")
        session.get.return_value = bad

        with pytest.raises(SourceUnavailableError, match="invalid JSON"):
            await source.list_records(EntityType.PRODUCTS, take=10)

    @pytest.mark.asyncio
    async def test_listing_endpoint_missing(self, source, session):
        session.get.return_value = response(status_code=404)

        with pytest.raises(SourceUnavailableError, match="Endpoint not found"):
            await source.list_records(EntityType.PRODUCTS, take=10)

    @pytest.mark.asyncio
    async def test_close(self, source, session):
        await source.close()
        session.close.assert_called_once()
