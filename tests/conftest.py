import pytest

from certs import generate


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="session")
def tls_material(tmp_path_factory):
    return generate(tmp_path_factory.mktemp("tls"))


class RecordingProvider:
    """Credential provider returning canned NTLM messages and logging calls."""

    def __init__(self, initial: bytes = b"NEGOTIATE-MSG", prefix: bytes = b"AUTHENTICATE:"):
        self.initial = initial
        self.prefix = prefix
        self.calls: list[tuple[str, bytes]] = []

    def initial_message(self) -> bytes:
        self.calls.append(("initial", b""))
        return self.initial

    def response_message(self, challenge: bytes) -> bytes:
        self.calls.append(("response", challenge))
        return self.prefix + challenge


@pytest.fixture
def provider():
    return RecordingProvider()
