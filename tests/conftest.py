import httpx
import pytest
from fastapi.testclient import TestClient

from src.proxy.config import PolicyConfig, PolicyStore
from src.proxy.forwarder import UpstreamForwarder
from src.proxy.gateway import ReverseProxyGateway

POLICY_ENV_VARS = (
    "PROXY_HOSTNAME",
    "PROXY_PROTOCOL",
    "PATHNAME_REGEX",
    "UA_WHITELIST_REGEX",
    "UA_BLACKLIST_REGEX",
    "IP_WHITELIST_REGEX",
    "IP_BLACKLIST_REGEX",
    "IP_WHITELIST",
    "IP_BLACKLIST",
    "REGION_WHITELIST_REGEX",
    "REGION_BLACKLIST_REGEX",
    "URL302",
    "DEBUG",
    "PUBLIC_HOSTNAME",
)


@pytest.fixture(autouse=True)
def clean_policy_env(monkeypatch):
    """Keep the host environment out of policy settings."""
    for name in POLICY_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def make_policy():
    def _make(**values):
        values.setdefault("PROXY_HOSTNAME", "example.internal")
        return PolicyConfig.build(**values)

    return _make


class UpstreamRecorder:
    """Fake origin: records requests and answers with a configurable handler."""

    def __init__(self):
        self.requests = []
        self.handler = lambda request: httpx.Response(200, text="ok")

    def __call__(self, request: httpx.Request):
        self.requests.append(request)
        return self.handler(request)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


@pytest.fixture
def upstream():
    return UpstreamRecorder()


@pytest.fixture
def forwarder(upstream):
    client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    return UpstreamForwarder(client=client)


@pytest.fixture
def make_client(forwarder):
    """Build a TestClient around a gateway serving a fixed policy snapshot."""

    def _make(policy: PolicyConfig, client_ip_header: str = "x-real-ip"):
        gateway = ReverseProxyGateway(
            policy_store=PolicyStore.static(policy),
            forwarder=forwarder,
            client_ip_header=client_ip_header,
        )
        return TestClient(gateway.create_app(), follow_redirects=False)

    return _make
