"""Fixtures compartidos para los tests de la sesión MQTT."""

import pytest

from modules.cloudiot_mqtt.config import SessionConfig
from modules.cloudiot_mqtt.errors import ConnectionLost, PublishFailure
from modules.cloudiot_mqtt.tokens import Credential
from modules.cloudiot_mqtt.transport import ConnectionState

START_TIME = 1_700_000_000.0


class FakeClock:
    """Reloj controlado; ``sleep`` avanza el tiempo sin esperar."""

    def __init__(self, start: float = START_TIME):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


class FakeTokenProvider:
    """Genera tokens numerados con el reloj controlado."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.minted = []

    def mint(self, audience: str) -> Credential:
        credential = Credential(token=f"token-{len(self.minted) + 1}", issued_at=self.clock())
        self.minted.append((audience, credential))
        return credential


class FakeTransport:
    """Transporte en memoria que registra cada operación en orden."""

    def __init__(self, connect_errors=None, publish_error_on=None):
        self.calls = []
        self.connect_errors = list(connect_errors or [])
        self.publish_error_on = publish_error_on
        self.handler = None
        self.state = ConnectionState.DISCONNECTED
        self.has_connection = False
        self.closed = False

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    def set_message_handler(self, handler):
        previous, self.handler = self.handler, handler
        return previous

    async def connect(self, credential):
        self.calls.append(("connect", credential.token))
        if self.connect_errors:
            self.state = ConnectionState.FAILED
            raise self.connect_errors.pop(0)
        self.state = ConnectionState.CONNECTED
        self.has_connection = True
        return self.state

    async def publish(self, topic, payload, qos=1):
        if not self.is_connected:
            raise ConnectionLost(f"No se puede publicar: estado {self.state.value}")
        self.calls.append(("publish", topic, payload, qos))
        if self.publish_error_on and topic.endswith(self.publish_error_on):
            raise PublishFailure(topic)
        return len(self.calls)

    async def subscribe(self, topic, qos=1):
        if not self.is_connected:
            raise ConnectionLost(f"No se puede suscribir: estado {self.state.value}")
        self.calls.append(("subscribe", topic, qos))
        return qos

    async def disconnect(self):
        self.calls.append(("disconnect",))
        self.state = ConnectionState.DISCONNECTED
        self.has_connection = False

    def interrupt(self):
        """Simula una caída: la conexión nativa sigue viva pero sin sesión."""
        self.state = ConnectionState.DISCONNECTED

    def close(self):
        self.calls.append(("close",))
        self.closed = True

    def status(self):
        return {
            "client_id": "test-client",
            "endpoint": "ssl://localhost:8883",
            "connection_status": self.state.value,
        }

    def of(self, kind):
        return [call for call in self.calls if call[0] == kind]


def make_config(**overrides) -> SessionConfig:
    values = dict(
        project_id="blue-jet-123",
        registry_id="my-registry",
        device_id="my-device",
        private_key_file="/path/to/rsa_private.pem",
        algorithm="RS256",
        num_messages=3,
        wait_time=2,
    )
    values.update(overrides)
    return SessionConfig(**values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def token_provider(clock):
    return FakeTokenProvider(clock)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def config_factory():
    return make_config


@pytest.fixture
def transport_factory():
    return FakeTransport
