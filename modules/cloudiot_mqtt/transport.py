"""Sesión de transporte MQTT.

Envoltorio sobre una única conexión MQTT 3.1.1 + TLS (awscrt) con el
bridge de Cloud IoT. El JWT viaja en el campo password; el username es un
valor fijo que el broker ignora.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

from awscrt import io, mqtt
from awscrt.exceptions import AwsCrtError

from modules.cloudiot_mqtt.config import SessionIdentity
from modules.cloudiot_mqtt.errors import (
    ConnectionLost,
    ConnectionRefused,
    PublishFailure,
    ServerUnreachable,
    SubscribeFailure,
)
from modules.cloudiot_mqtt.tokens import Credential

# El broker ignora el username, pero el cliente debe enviarlo para que
# se transmita el campo password
USERNAME = "unused"

QOS_AT_MOST_ONCE = 0
QOS_AT_LEAST_ONCE = 1

# Errores de awscrt que indican conexión perdida
CONNECTION_LOST_ERRORS = frozenset({
    "AWS_ERROR_MQTT_UNEXPECTED_HANGUP",
    "AWS_ERROR_MQTT_TIMEOUT",
    "AWS_ERROR_MQTT_NOT_CONNECTED",
    "AWS_IO_SOCKET_CLOSED",
    "AWS_IO_BROKEN_PIPE",
})

# Errores de awscrt que indican broker inalcanzable
SERVER_UNREACHABLE_ERRORS = frozenset({
    "AWS_IO_SOCKET_TIMEOUT",
    "AWS_IO_SOCKET_CONNECTION_REFUSED",
    "AWS_IO_SOCKET_NO_ROUTE_TO_HOST",
    "AWS_IO_SOCKET_NETWORK_DOWN",
    "AWS_IO_DNS_QUERY_FAILED",
    "AWS_IO_DNS_NO_ADDRESS_FOR_HOST",
    "AWS_IO_DNS_INVALID_NAME",
})


class ConnectionState(Enum):
    """Estados de la conexión con el broker."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


MessageHandler = Callable[[str, bytes], None]


def classify_error(error: Exception, message: str):
    """Traduce un error de awscrt a la taxonomía de la sesión."""
    name = getattr(error, "name", "")
    if name in CONNECTION_LOST_ERRORS:
        return ConnectionLost(message, error)
    if name in SERVER_UNREACHABLE_ERRORS:
        return ServerUnreachable(message, error)
    if isinstance(error, (TimeoutError, ConnectionError, OSError)):
        return ServerUnreachable(message, error)
    return ConnectionRefused(message, error)


class TransportSession:
    """Conexión segura y autenticada con el broker.

    Características:
    - MQTT 3.1.1 sobre TLS 1.2 como mínimo
    - JWT como password en cada connect
    - Un único destino de despacho para mensajes entrantes, reemplazable
    - Señal de conexión perdida
    """

    KEEPALIVE_SECS = 60

    def __init__(
        self,
        identity: SessionIdentity,
        ca_certs: Optional[str] = None,
        on_connection_lost: Optional[Callable[[Exception], None]] = None,
    ):
        """Inicializa la sesión de transporte.

        Args:
            identity: Identidad de la sesión (client ID y endpoint)
            ca_certs: Ruta a certificados raíz; si es None se usa el
                almacén del sistema
            on_connection_lost: Callback ante pérdida de conexión no solicitada
        """
        self.identity = identity
        self.ca_certs = ca_certs
        self.on_connection_lost = on_connection_lost
        self.logger = logging.getLogger(__name__)

        self._state = ConnectionState.DISCONNECTED
        self._client: Optional[mqtt.Client] = None
        self._connection: Optional[mqtt.Connection] = None
        self._handler: Optional[MessageHandler] = None
        self._closed = False
        self._last_publish_ts: Optional[float] = None
        self._publish_count = 0
        self._subscriptions: Dict[str, int] = {}

    def _create_client(self) -> mqtt.Client:
        tls_options = io.TlsContextOptions()
        tls_options.min_tls_ver = io.TlsVersion.TLSv1_2
        if self.ca_certs:
            tls_options.override_default_trust_store_from_path(None, self.ca_certs)
        tls_ctx = io.ClientTlsContext(tls_options)

        bootstrap = io.ClientBootstrap.get_or_create_static_default()
        return mqtt.Client(bootstrap, tls_ctx)

    def _create_connection(self, credential: Credential) -> mqtt.Connection:
        """Crea la conexión nativa con la credencial vigente."""
        if self._client is None:
            self._client = self._create_client()

        return mqtt.Connection(
            client=self._client,
            host_name=self.identity.host,
            port=self.identity.port,
            client_id=self.identity.client_id,
            clean_session=True,
            on_connection_interrupted=self._on_connection_interrupted_callback,
            on_connection_resumed=self._on_connection_resumed_callback,
            keep_alive_secs=self.KEEPALIVE_SECS,
            username=USERNAME,
            password=credential.token,
        )

    def _on_connection_interrupted_callback(self, connection, error, **kwargs):
        """Callback cuando la conexión se interrumpe (hilo de awscrt)."""
        if connection is not self._connection:
            return
        self.logger.warning(f"Conexión MQTT interrumpida: {error}")
        self._state = ConnectionState.DISCONNECTED
        if self.on_connection_lost:
            self.on_connection_lost(error)

    def _on_connection_resumed_callback(self, connection, return_code, session_present, **kwargs):
        """Callback cuando la conexión se restablece (hilo de awscrt)."""
        if connection is not self._connection:
            return
        self.logger.info(f"Conexión MQTT restablecida: {return_code}")
        self._state = ConnectionState.CONNECTED

    def _dispatch(self, topic, payload, dup=False, qos=None, retain=False, **kwargs):
        """Entrega un mensaje entrante al manejador actual."""
        handler = self._handler
        if handler is None:
            self.logger.debug(f"Mensaje sin manejador en {topic}, descartado")
            return
        handler(topic, payload)

    def set_message_handler(self, handler: Optional[MessageHandler]) -> Optional[MessageHandler]:
        """Reemplaza el manejador de mensajes entrantes.

        Args:
            handler: Nuevo manejador ``(topic, payload)`` o None

        Returns:
            El manejador anterior
        """
        previous, self._handler = self._handler, handler
        return previous

    @property
    def message_handler(self) -> Optional[MessageHandler]:
        return self._handler

    async def connect(self, credential: Credential) -> ConnectionState:
        """Realiza un único intento de conexión.

        Args:
            credential: Credencial vigente; su token viaja como password

        Returns:
            ConnectionState.CONNECTED

        Raises:
            ConnectionLost: Si la conexión se cae durante el handshake
            ServerUnreachable: Si no se alcanza el broker
            ConnectionRefused: Si el broker rechaza la conexión
        """
        if self._closed:
            raise ConnectionRefused("La sesión de transporte está cerrada")

        self._state = ConnectionState.CONNECTING
        self.logger.info(
            f"Conectando {self.identity.client_id} a {self.identity.server_address}"
        )

        try:
            self._connection = self._create_connection(credential)
            await asyncio.wrap_future(self._connection.connect())
        except (AwsCrtError, OSError) as e:
            self._state = ConnectionState.FAILED
            self._connection = None
            self.logger.error(f"Error conectando a {self.identity.server_address}: {e}")
            raise classify_error(e, f"Error conectando a {self.identity.server_address}") from e
        except Exception as e:
            self._state = ConnectionState.FAILED
            self._connection = None
            self.logger.error(f"Conexión rechazada por {self.identity.server_address}: {e}")
            raise ConnectionRefused(
                f"Conexión rechazada por {self.identity.server_address}", e
            ) from e

        self._state = ConnectionState.CONNECTED
        self._subscriptions.clear()
        self.logger.info(f"Conectado a {self.identity.server_address}")
        return self._state

    def _require_connected(self, action: str):
        if self._state != ConnectionState.CONNECTED or self._connection is None:
            raise ConnectionLost(f"No se puede {action}: estado {self._state.value}")

    async def publish(self, topic: str, payload, qos: int = QOS_AT_LEAST_ONCE) -> int:
        """Publica un mensaje y espera la confirmación del QoS.

        Args:
            topic: Tópico MQTT
            payload: Texto o bytes a publicar
            qos: 0 (at most once) o 1 (at least once)

        Returns:
            ID del paquete publicado

        Raises:
            ConnectionLost: Si no hay conexión activa
            PublishFailure: Si la publicación falla
        """
        self._require_connected("publicar")

        try:
            publish_future, packet_id = self._connection.publish(
                topic=topic,
                payload=payload,
                qos=mqtt.QoS(qos),
            )
            await asyncio.wrap_future(publish_future)
        except Exception as e:
            self.logger.error(f"Error publicando en {topic}: {e}")
            raise PublishFailure(topic, e) from e

        self._last_publish_ts = time.time()
        self._publish_count += 1
        self.logger.debug(f"Mensaje publicado en {topic} (qos={qos}, packet_id={packet_id})")
        return packet_id

    async def subscribe(self, topic: str, qos: int = QOS_AT_LEAST_ONCE) -> int:
        """Se suscribe a un tópico; los mensajes van al manejador actual.

        Returns:
            QoS concedido por el broker

        Raises:
            ConnectionLost: Si no hay conexión activa
            SubscribeFailure: Si el broker rechaza la suscripción
        """
        self._require_connected("suscribirse")

        try:
            subscribe_future, packet_id = self._connection.subscribe(
                topic=topic,
                qos=mqtt.QoS(qos),
                callback=self._dispatch,
            )
            result = await asyncio.wrap_future(subscribe_future)
        except Exception as e:
            self.logger.error(f"Error suscribiéndose a {topic}: {e}")
            raise SubscribeFailure(topic, e) from e

        granted = result.get("qos") if isinstance(result, dict) else qos
        if granted is None:
            raise SubscribeFailure(topic)

        granted = int(granted)
        self._subscriptions[topic] = granted
        self.logger.info(f"Escuchando en {topic} (qos={granted})")
        return granted

    async def disconnect(self):
        """Desconecta del broker si hay conexión."""
        connection = self._connection
        if connection is None:
            self._state = ConnectionState.DISCONNECTED
            return

        self.logger.info(f"Desconectando de {self.identity.server_address}")
        try:
            await asyncio.wrap_future(connection.disconnect())
        finally:
            self._connection = None
            self._state = ConnectionState.DISCONNECTED
            self._subscriptions.clear()

    def close(self):
        """Libera los recursos del transporte. Idempotente.

        Si aún queda una conexión nativa (por ejemplo tras una interrupción,
        con la reconexión automática de awscrt en curso) se le pide
        desconectar sin esperar la confirmación.
        """
        if self._closed:
            return
        self._closed = True
        self._handler = None

        connection, self._connection = self._connection, None
        if connection is not None:
            try:
                connection.disconnect()
            except Exception as e:
                self.logger.error(f"Error liberando la conexión nativa: {e}")

        self._client = None
        self._state = ConnectionState.DISCONNECTED
        self.logger.debug(f"Transporte cerrado para {self.identity.client_id}")

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def has_connection(self) -> bool:
        """True mientras exista una conexión nativa, aunque esté interrumpida."""
        return self._connection is not None

    @property
    def is_closed(self) -> bool:
        return self._closed

    def status(self) -> Dict[str, Any]:
        """Obtiene el estado actual del transporte."""
        return {
            "connection_status": self._state.value,
            "connected": self.is_connected,
            "client_id": self.identity.client_id,
            "endpoint": self.identity.server_address,
            "subscriptions": dict(self._subscriptions),
            "publish_count": self._publish_count,
            "last_publish_ts": self._last_publish_ts,
        }

    def __repr__(self) -> str:
        return f"TransportSession(client_id={self.identity.client_id}, status={self._state.value})"
