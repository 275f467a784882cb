"""Tests para la sesión de transporte.

Pruebas unitarias de la envoltura sobre la conexión MQTT de awscrt.
"""

from concurrent.futures import Future
from unittest.mock import Mock, patch

import pytest
from awscrt.exceptions import AwsCrtError

from modules.cloudiot_mqtt.config import SessionIdentity
from modules.cloudiot_mqtt.errors import (
    ConnectionLost,
    ConnectionRefused,
    PublishFailure,
    ServerUnreachable,
    SubscribeFailure,
)
from modules.cloudiot_mqtt.session_loop import LoopState, SessionLoop
from modules.cloudiot_mqtt.tokens import Credential
from modules.cloudiot_mqtt.transport import (
    USERNAME,
    ConnectionState,
    TransportSession,
    classify_error,
)


IDENTITY = SessionIdentity(
    project_id="blue-jet-123",
    cloud_region="asia-east1",
    registry_id="my-registry",
    device_id="my-device",
    host="mqtt.googleapis.com",
    port=8883,
    algorithm="RS256",
)


def done(result=None):
    future = Future()
    future.set_result(result)
    return future


def failed(error):
    future = Future()
    future.set_exception(error)
    return future


class TestSessionIdentity:
    """Tests para la identidad de la sesión."""

    def test_client_id_format(self):
        """Test formato del client ID."""
        assert IDENTITY.client_id == (
            "projects/blue-jet-123/locations/asia-east1/registries/my-registry/devices/my-device"
        )

    def test_server_address(self):
        """Test dirección del servidor."""
        assert IDENTITY.server_address == "ssl://mqtt.googleapis.com:8883"


class TestErrorClassification:
    """Tests para la clasificación de errores de awscrt."""

    def test_hangup_is_connection_lost(self):
        error = AwsCrtError(0, "AWS_ERROR_MQTT_UNEXPECTED_HANGUP", "hangup")
        assert isinstance(classify_error(error, "x"), ConnectionLost)

    def test_socket_errors_are_unreachable(self):
        error = AwsCrtError(0, "AWS_IO_SOCKET_TIMEOUT", "timeout")
        assert isinstance(classify_error(error, "x"), ServerUnreachable)
        assert isinstance(classify_error(ConnectionRefusedError(), "x"), ServerUnreachable)

    def test_other_errors_are_refused(self):
        error = AwsCrtError(0, "AWS_ERROR_MQTT_PROTOCOL_ERROR", "protocol")
        assert isinstance(classify_error(error, "x"), ConnectionRefused)


class TestTransportSession:
    """Tests para la sesión de transporte."""

    @pytest.fixture
    def mock_mqtt(self):
        """Fixture con awscrt mockeado."""
        with patch('modules.cloudiot_mqtt.transport.mqtt') as mock_mqtt, \
                patch('modules.cloudiot_mqtt.transport.io') as mock_io:
            mock_mqtt.QoS.side_effect = lambda qos: qos
            connection = Mock()
            connection.connect.return_value = done({"session_present": False})
            connection.disconnect.return_value = done()
            connection.publish.return_value = (done(), 7)
            connection.subscribe.side_effect = lambda topic, qos, callback: (
                done({"packet_id": 1, "topic": topic, "qos": qos}), 1
            )
            mock_mqtt.Connection.return_value = connection
            yield mock_mqtt, mock_io, connection

    def test_initial_state(self):
        """Test estado inicial."""
        session = TransportSession(IDENTITY)

        assert session.state == ConnectionState.DISCONNECTED
        assert not session.is_connected
        assert session.message_handler is None

    @pytest.mark.asyncio
    async def test_connect_sends_token_as_password(self, mock_mqtt):
        """Test que el JWT viaja como password con username fijo."""
        mqtt_module, io_module, connection = mock_mqtt
        session = TransportSession(IDENTITY)

        state = await session.connect(Credential(token="jwt-1", issued_at=0.0))

        assert state == ConnectionState.CONNECTED
        assert session.is_connected
        kwargs = mqtt_module.Connection.call_args.kwargs
        assert kwargs["username"] == USERNAME == "unused"
        assert kwargs["password"] == "jwt-1"
        assert kwargs["client_id"] == IDENTITY.client_id
        assert kwargs["host_name"] == "mqtt.googleapis.com"
        assert kwargs["port"] == 8883
        assert kwargs["clean_session"] is True

    @pytest.mark.asyncio
    async def test_tls_minimum_version(self, mock_mqtt):
        """Test que se exige TLS 1.2 como mínimo."""
        mqtt_module, io_module, connection = mock_mqtt
        session = TransportSession(IDENTITY, ca_certs="/path/to/roots.pem")

        await session.connect(Credential(token="jwt-1", issued_at=0.0))

        tls_options = io_module.TlsContextOptions.return_value
        assert tls_options.min_tls_ver == io_module.TlsVersion.TLSv1_2
        tls_options.override_default_trust_store_from_path.assert_called_once_with(
            None, "/path/to/roots.pem"
        )

    @pytest.mark.asyncio
    async def test_reconnect_uses_new_credential(self, mock_mqtt):
        """Test que cada connect usa la credencial vigente."""
        mqtt_module, io_module, connection = mock_mqtt
        session = TransportSession(IDENTITY)

        await session.connect(Credential(token="jwt-1", issued_at=0.0))
        await session.disconnect()
        await session.connect(Credential(token="jwt-2", issued_at=1200.0))

        passwords = [c.kwargs["password"] for c in mqtt_module.Connection.call_args_list]
        assert passwords == ["jwt-1", "jwt-2"]
        # El cliente TLS se reutiliza
        assert mqtt_module.Client.call_count == 1

    @pytest.mark.asyncio
    async def test_connect_unreachable(self, mock_mqtt):
        """Test error de socket al conectar."""
        mqtt_module, io_module, connection = mock_mqtt
        connection.connect.return_value = failed(
            AwsCrtError(1047, "AWS_IO_SOCKET_CONNECTION_REFUSED", "refused")
        )
        session = TransportSession(IDENTITY)

        with pytest.raises(ServerUnreachable):
            await session.connect(Credential(token="jwt-1", issued_at=0.0))

        assert session.state == ConnectionState.FAILED

    @pytest.mark.asyncio
    async def test_connect_refused(self, mock_mqtt):
        """Test rechazo no reintentable del broker."""
        mqtt_module, io_module, connection = mock_mqtt
        connection.connect.return_value = failed(Exception("CONNACK: not authorized"))
        session = TransportSession(IDENTITY)

        with pytest.raises(ConnectionRefused):
            await session.connect(Credential(token="jwt-1", issued_at=0.0))

    @pytest.mark.asyncio
    async def test_connect_after_close(self, mock_mqtt):
        """Test que una sesión cerrada no vuelve a conectar."""
        session = TransportSession(IDENTITY)
        session.close()

        with pytest.raises(ConnectionRefused):
            await session.connect(Credential(token="jwt-1", issued_at=0.0))

    @pytest.mark.asyncio
    async def test_publish_requires_connection(self, mock_mqtt):
        """Test que no se publica sin conexión."""
        session = TransportSession(IDENTITY)

        with pytest.raises(ConnectionLost):
            await session.publish("/devices/my-device/events", "payload", qos=1)

        with pytest.raises(ConnectionLost):
            await session.subscribe("/devices/my-device/config", qos=1)

    @pytest.mark.asyncio
    async def test_publish(self, mock_mqtt):
        """Test publicación con QoS 1."""
        mqtt_module, io_module, connection = mock_mqtt
        session = TransportSession(IDENTITY)
        await session.connect(Credential(token="jwt-1", issued_at=0.0))

        packet_id = await session.publish("/devices/my-device/events", "payload", qos=1)

        assert packet_id == 7
        connection.publish.assert_called_once_with(
            topic="/devices/my-device/events", payload="payload", qos=1
        )
        assert session.status()["publish_count"] == 1

    @pytest.mark.asyncio
    async def test_publish_failure(self, mock_mqtt):
        """Test error de publicación."""
        mqtt_module, io_module, connection = mock_mqtt
        connection.publish.return_value = (failed(Exception("timeout")), 7)
        session = TransportSession(IDENTITY)
        await session.connect(Credential(token="jwt-1", issued_at=0.0))

        with pytest.raises(PublishFailure):
            await session.publish("/devices/my-device/events", "payload")

    @pytest.mark.asyncio
    async def test_subscribe_dispatches_to_current_handler(self, mock_mqtt):
        """Test que los mensajes van al manejador vigente."""
        mqtt_module, io_module, connection = mock_mqtt
        session = TransportSession(IDENTITY)
        await session.connect(Credential(token="jwt-1", issued_at=0.0))

        granted = await session.subscribe("/devices/my-device/config", qos=1)
        callback = connection.subscribe.call_args.kwargs["callback"]

        first, second = Mock(), Mock()
        session.set_message_handler(first)
        callback(topic="/devices/my-device/config", payload=b"v1", dup=False, qos=1, retain=False)
        previous = session.set_message_handler(second)
        callback(topic="/devices/my-device/config", payload=b"v2", dup=False, qos=1, retain=False)

        assert granted == 1
        assert previous is first
        first.assert_called_once_with("/devices/my-device/config", b"v1")
        second.assert_called_once_with("/devices/my-device/config", b"v2")

    @pytest.mark.asyncio
    async def test_subscribe_rejected(self, mock_mqtt):
        """Test suscripción rechazada por el broker."""
        mqtt_module, io_module, connection = mock_mqtt
        connection.subscribe.side_effect = lambda topic, qos, callback: (
            done({"packet_id": 1, "topic": topic, "qos": None}), 1
        )
        session = TransportSession(IDENTITY)
        await session.connect(Credential(token="jwt-1", issued_at=0.0))

        with pytest.raises(SubscribeFailure):
            await session.subscribe("/devices/my-device/errors", qos=0)

    @pytest.mark.asyncio
    async def test_connection_interrupted(self, mock_mqtt):
        """Test señal de conexión perdida."""
        mqtt_module, io_module, connection = mock_mqtt
        on_lost = Mock()
        session = TransportSession(IDENTITY, on_connection_lost=on_lost)
        await session.connect(Credential(token="jwt-1", issued_at=0.0))

        error = Exception("Network error")
        session._on_connection_interrupted_callback(connection, error)

        assert session.state == ConnectionState.DISCONNECTED
        on_lost.assert_called_once_with(error)

        session._on_connection_resumed_callback(connection, return_code=0, session_present=False)
        assert session.is_connected

    @pytest.mark.asyncio
    async def test_disconnect_and_close(self, mock_mqtt):
        """Test desconexión y liberación de recursos."""
        mqtt_module, io_module, connection = mock_mqtt
        session = TransportSession(IDENTITY)
        await session.connect(Credential(token="jwt-1", issued_at=0.0))
        session.set_message_handler(Mock())

        await session.disconnect()
        session.close()
        session.close()

        connection.disconnect.assert_called_once()
        assert session.state == ConnectionState.DISCONNECTED
        assert session.is_closed
        assert session.message_handler is None

    @pytest.mark.asyncio
    async def test_close_releases_interrupted_connection(self, mock_mqtt):
        """Test que close libera la conexión nativa tras una interrupción."""
        mqtt_module, io_module, connection = mock_mqtt
        session = TransportSession(IDENTITY)
        await session.connect(Credential(token="jwt-1", issued_at=0.0))

        session._on_connection_interrupted_callback(connection, Exception("Network error"))
        assert not session.is_connected
        assert session.has_connection

        session.close()
        session.close()

        connection.disconnect.assert_called_once()
        assert not session.has_connection

    @pytest.mark.asyncio
    async def test_close_logs_native_disconnect_error(self, mock_mqtt, caplog):
        """Test que un fallo al liberar la conexión nativa se registra."""
        mqtt_module, io_module, connection = mock_mqtt
        connection.disconnect.side_effect = AwsCrtError(0, "AWS_ERROR_MQTT_NOT_CONNECTED", "x")
        session = TransportSession(IDENTITY)
        await session.connect(Credential(token="jwt-1", issued_at=0.0))

        session.close()

        assert session.is_closed
        assert "Error liberando la conexión nativa" in caplog.text

    @pytest.mark.asyncio
    async def test_session_loop_disconnects_after_interruption(
        self, mock_mqtt, config_factory, token_provider, clock
    ):
        """Test que el cierre del bucle desconecta una conexión interrumpida."""
        mqtt_module, io_module, connection = mock_mqtt
        session = TransportSession(IDENTITY)

        def publish(topic, payload, qos):
            session._on_connection_interrupted_callback(connection, Exception("Network error"))
            return done(), 7

        connection.publish.side_effect = publish
        loop = SessionLoop(
            config_factory(num_messages=1, wait_time=0),
            transport=session,
            token_provider=token_provider,
            sleep=clock.sleep,
            clock=clock,
        )

        published = await loop.run()

        assert published == 1
        assert connection.disconnect.call_count == 1
        assert session.is_closed
        assert loop.state == LoopState.CLOSED
