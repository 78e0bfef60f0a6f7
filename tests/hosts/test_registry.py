import pytest
from unittest.mock import Mock

from src.hosts.adapters.base import BaseHostAdapter
from src.hosts.adapters.imgur import ImgurAdapter
from src.hosts.adapters.postimages import PostimagesAdapter
from src.hosts.models import FetchResult, HostAdapterConfig, ParsedInput, RateLimitConfig, ResourceKind
from src.hosts.registry import HostRegistry, build_registry
from src.hosts.settings import DEFAULT_RATE_LIMIT
from src.mirror.errors import ConfigurationError


class ProviderX(BaseHostAdapter):
    """Minimal adapter whose public ids look like providerX:gallery:<digits>."""

    config = HostAdapterConfig(
        stale_after_ms=1000,
        page_cache_seconds=0,
        api_cache_seconds=0,
        raw_cache_seconds=0,
        rate_limit=RateLimitConfig(window_ms=1000, max_requests=5),
    )

    def __init__(self, accepts_public_ids=True):
        super().__init__(session=Mock(headers={}))
        self.accepts_public_ids = accepts_public_ids

    @property
    def id(self):
        return "providerX"

    @property
    def name(self):
        return "Provider X"

    def match_input(self, raw):
        return "x.example" in raw

    def parse_input(self, raw):
        if "x.example/g/" not in raw:
            return None
        resource_id = f"gallery:{raw.rsplit('/', 1)[-1]}"
        return ParsedInput(provider_id=self.id, resource_id=resource_id, public_id=self.to_public_id(resource_id))

    def parse_public_id(self, public_id):
        if not self.accepts_public_ids or not public_id.startswith("providerX:gallery:"):
            return None
        resource_id = public_id[len("providerX:"):]
        return ParsedInput(
            provider_id=self.id,
            resource_id=resource_id,
            public_id=public_id,
            type_hint=ResourceKind.ALBUM,
        )

    def to_public_id(self, resource_id):
        return f"providerX:{resource_id}"

    def fetch_image(self, resource_id):
        return FetchResult.not_found()

    def fetch_album(self, resource_id):
        return FetchResult.not_found()


@pytest.fixture
def imgur():
    return ImgurAdapter("test-client", session=Mock(headers={}))


@pytest.fixture
def postimages():
    return PostimagesAdapter(session=Mock(headers={}))


@pytest.fixture
def registry(imgur, postimages):
    return HostRegistry([imgur, postimages, ProviderX()])


def test_registry_needs_unique_adapters(imgur):
    with pytest.raises(ValueError):
        HostRegistry([])
    with pytest.raises(ValueError):
        HostRegistry([imgur, ImgurAdapter("other", session=Mock(headers={}))])


def test_first_adapter_is_default(registry, imgur):
    assert registry.default_adapter is imgur
    assert [a.id for a in registry.adapters] == ["imgur", "postimages", "providerX"]
    assert registry.get_adapter("postimages").name == "Postimages"
    assert registry.get_adapter("nope") is None


def test_resolve_input_dispatches_by_host(registry):
    assert registry.resolve_input("https://postimg.cc/gallery/Gal42").provider_id == "postimages"
    assert registry.resolve_input("https://x.example/g/99").resource_id == "gallery:99"

    album = registry.resolve_input("https://imgur.com/a/my-cool-album-AbCd123")
    assert album.provider_id == "imgur"
    assert album.resource_id == "AbCd123"
    assert album.type_hint == ResourceKind.ALBUM


def test_bare_id_goes_to_default_adapter(registry):
    parsed = registry.resolve_input("AbCd12")

    assert parsed.provider_id == "imgur"
    assert parsed.resource_id == "AbCd12"
    assert parsed.public_id == "AbCd12"


def test_unparseable_input(registry):
    assert registry.resolve_input("https://example.com/whatever") is None


def test_parse_public_id_delegates_to_prefixed_adapter(registry):
    parsed = registry.parse_public_id("providerX:gallery:99")

    assert parsed.provider_id == "providerX"
    assert parsed.resource_id == "gallery:99"
    assert parsed.type_hint == ResourceKind.ALBUM


def test_parse_public_id_degrades_when_adapter_rejects(imgur):
    registry = HostRegistry([imgur, ProviderX(accepts_public_ids=False)])

    parsed = registry.parse_public_id("providerX:gallery:99")

    assert parsed == ParsedInput(provider_id="providerX", resource_id="gallery:99", public_id="providerX:gallery:99")


def test_parse_public_id_legacy_and_unknown(registry):
    assert registry.parse_public_id("AbCd12").provider_id == "imgur"
    assert registry.parse_public_id("postimages:page:Abc123").resource_id == "page:Abc123"
    assert registry.parse_public_id("nobody:???") is None


def test_cache_keys(registry, imgur, postimages):
    x = registry.get_adapter("providerX")

    assert registry.cache_key(imgur, "AbCd12") == "AbCd12"
    assert registry.cache_key(postimages, "page:AbCd12") == "postimages:page:AbCd12"
    # ProviderX already prefixes its own keys
    assert registry.cache_key(x, "gallery:99") == "providerX:gallery:99"


def test_cache_keys_never_collide_across_providers(registry, imgur, postimages):
    x = registry.get_adapter("providerX")
    keys = {
        registry.cache_key(imgur, "Abc123"),
        registry.cache_key(postimages, "page:Abc123"),
        registry.cache_key(postimages, "gallery:Abc123"),
        registry.cache_key(x, "gallery:Abc123"),
    }
    assert len(keys) == 4


def test_resource_id_from_cache_key(registry, imgur, postimages):
    for adapter, resource_id in ((imgur, "AbCd12"), (postimages, "gallery:Gal42")):
        key = registry.cache_key(adapter, resource_id)
        assert registry.resource_id_from_cache_key(adapter, key) == resource_id


def test_public_id_round_trip_through_registry(registry, imgur, postimages):
    for adapter, resource_id in ((imgur, "AbCd12"), (postimages, "direct:Abc/x.jpg")):
        public_id = registry.to_public_id(adapter, resource_id)
        parsed = registry.parse_public_id(public_id)
        assert (parsed.provider_id, parsed.resource_id) == (adapter.provider_id, resource_id)


def test_rate_limit_override_and_default(registry, imgur):
    assert registry.get_rate_limit(imgur) == DEFAULT_RATE_LIMIT
    assert DEFAULT_RATE_LIMIT.window_ms == 15 * 60 * 1000
    assert DEFAULT_RATE_LIMIT.max_requests == 100
    assert registry.get_rate_limit(registry.get_adapter("providerX")).max_requests == 5


def test_build_registry():
    registry = build_registry("test-client", session=Mock(headers={}))

    assert registry.default_adapter.id == "imgur"
    assert [a.id for a in registry.adapters] == ["imgur", "postimages"]


def test_build_registry_without_client_id():
    with pytest.raises(ConfigurationError):
        build_registry("")
