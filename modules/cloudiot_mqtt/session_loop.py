"""Bucle de sesión.

Orquesta el ciclo de vida completo de una ejecución: conexión con back-off,
vinculación del dispositivo, escucha de mensajes entrantes, publicación
programada con refresco del JWT, espera final y cierre.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from modules.cloudiot_mqtt.backoff import BackoffConnector
from modules.cloudiot_mqtt.binder import IdentityBinder
from modules.cloudiot_mqtt.config import PublishSchedule, SessionConfig
from modules.cloudiot_mqtt.listener import InboundListener
from modules.cloudiot_mqtt.tokens import Credential, TokenProvider, check_algorithm
from modules.cloudiot_mqtt.transport import QOS_AT_LEAST_ONCE, TransportSession


class LoopState(Enum):
    """Estados del bucle de sesión."""
    INIT = "init"
    CONNECTING = "connecting"
    BOUND = "bound"
    PUBLISHING = "publishing"
    WAITING = "waiting"
    DRAINING = "draining"
    CLOSED = "closed"


def data_topic(device_id: str, message_type: str) -> str:
    """Tópico de telemetría (event) o estado (state) del dispositivo."""
    sub_topic = "events" if message_type == "event" else "state"
    return f"/devices/{device_id}/{sub_topic}"


class SessionLoop:
    """Orquestador de la sesión.

    Características:
    - Conexión inicial con back-off exponencial acotado
    - Attach del dispositivo cuando la sesión es de un gateway
    - Refresco del JWT con reconexión completa antes de seguir publicando
    - Liberación garantizada del transporte en cualquier salida
    """

    WAIT_TICK = 1.0

    def __init__(
        self,
        config: SessionConfig,
        transport: Optional[TransportSession] = None,
        token_provider: Optional[TokenProvider] = None,
        connector: Optional[BackoffConnector] = None,
        binder: Optional[IdentityBinder] = None,
        listener: Optional[InboundListener] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        """Inicializa el bucle.

        Args:
            config: Configuración completa de la ejecución
            transport: Sesión de transporte (por defecto, awscrt)
            token_provider: Proveedor de JWT
            connector: Conector con back-off
            binder: Vinculador de dispositivos
            listener: Listener de mensajes entrantes
            sleep: Corrutina de espera (inyectable para tests)
            clock: Reloj epoch en segundos (inyectable para tests)
        """
        self.config = config
        self.identity = config.identity()
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or time.time

        self.transport = transport or TransportSession(self.identity, ca_certs=config.ca_certs)
        self.token_provider = token_provider or TokenProvider(
            config.private_key_file,
            config.algorithm,
            token_exp_minutes=config.token_exp_minutes,
            clock=self._clock,
        )
        self.connector = connector or BackoffConnector(sleep=self._sleep)
        self.binder = binder or IdentityBinder()
        self.listener = listener or InboundListener()
        self.logger = logging.getLogger(__name__)

        self._state = LoopState.INIT
        self._credential: Optional[Credential] = None
        self._published = 0
        self._refreshes = 0

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def credential(self) -> Optional[Credential]:
        return self._credential

    @property
    def target_device_id(self) -> str:
        """Dispositivo en cuyo nombre se publica y se escucha."""
        return self.config.device_id

    @property
    def token_lifetime(self) -> float:
        return self.config.token_exp_minutes * 60

    def _mint(self) -> Credential:
        self._credential = self.token_provider.mint(self.config.project_id)
        return self._credential

    async def _bind(self):
        """Suscripciones y attach sobre una conexión recién establecida."""
        await self.listener.listen_for_errors(self.transport, self.identity.device_id)
        if self.config.is_gateway:
            await self.binder.attach(self.transport, self.target_device_id)
        self._state = LoopState.BOUND

    async def _establish(self):
        """INIT → CONNECTING → BOUND."""
        # Un selector inválido es fatal antes de cualquier intento de conexión
        check_algorithm(self.config.algorithm)

        self._state = LoopState.CONNECTING
        self.logger.info(f"Client ID: {self.identity.client_id}")
        await self.connector.connect(self.transport, self._mint())
        await self._bind()

    async def refresh_if_needed(self) -> bool:
        """Refresca el JWT si alcanzó su vida útil.

        El refresco implica desconexión y un único intento de reconexión con
        la credencial nueva; un fallo en ese intento es fatal.

        Returns:
            True si se refrescó la credencial
        """
        seconds_since_issue = self._credential.age(self._clock())
        if seconds_since_issue < self.token_lifetime:
            return False

        self.logger.info(f"Refrescando token tras {seconds_since_issue:.0f}s")
        credential = self._mint()
        await self.transport.disconnect()
        await self.transport.connect(credential)
        await self._bind()
        await self.listener.attach_callback(self.transport, self.target_device_id)
        self._state = LoopState.PUBLISHING
        self._refreshes += 1
        return True

    async def _publish_loop(self, schedule: PublishSchedule):
        topic = data_topic(self.target_device_id, schedule.message_type)

        for i in range(1, schedule.count + 1):
            payload = f"{self.config.registry_id}/{self.target_device_id}-payload-{i}"
            self.logger.info(
                f"Publicando {schedule.message_type} {i}/{schedule.count}: '{payload}'"
            )
            await self.refresh_if_needed()
            await self.transport.publish(topic, payload, qos=QOS_AT_LEAST_ONCE)
            self._published += 1
            await self._sleep(schedule.interval)

    async def _wait_for_messages(self, seconds: int):
        """Espera en pasos de 1s para recibir comandos o configuración."""
        self._state = LoopState.WAITING
        if seconds:
            self.logger.info(f"Esperando comandos durante {seconds}s")
        for tick in range(1, seconds + 1):
            await self._sleep(self.WAIT_TICK)
            self.logger.debug(f"Espera {tick}/{seconds}")

    async def _drain(self):
        """DRAINING → CLOSED: detach, disconnect y cierre incondicional."""
        self._state = LoopState.DRAINING
        try:
            await self.binder.unbind(self.transport, self.target_device_id)

            # Una conexión interrumpida sigue viva en awscrt y también se libera
            if self.transport.has_connection:
                try:
                    await self.transport.disconnect()
                except Exception as e:
                    self.logger.error(f"Error desconectando: {e}")
        finally:
            self.transport.close()
            self._state = LoopState.CLOSED

    async def run(self) -> int:
        """Ejecuta el bucle completo de publicación y escucha.

        Returns:
            Número de mensajes publicados

        Raises:
            AuthAlgorithmInvalid: Si el algoritmo no está soportado
            ConnectionTimeoutExceeded: Si se agota el back-off
            SessionError: Errores de conexión no reintentables o de publicación
        """
        schedule = self.config.schedule()
        try:
            await self._establish()
            await self.listener.attach_callback(self.transport, self.target_device_id)
            self._state = LoopState.PUBLISHING
            await self._publish_loop(schedule)
            await self._wait_for_messages(self.config.wait_time)
        finally:
            await self._drain()

        self.logger.info("Bucle finalizado correctamente")
        return self._published

    async def send_data_from_bound_device(self) -> int:
        """Publica ``telemetry_data`` una vez en nombre del dispositivo vinculado."""
        topic = data_topic(self.target_device_id, self.config.message_type)
        try:
            await self._establish()
            self._state = LoopState.PUBLISHING
            await self.transport.publish(topic, self.config.telemetry_data, qos=QOS_AT_LEAST_ONCE)
            self._published += 1
            self.logger.info(f"Datos enviados en nombre de {self.target_device_id}")
        finally:
            await self._drain()
        return self._published

    async def listen_for_config_messages(self) -> int:
        """Escucha configuración y comandos del dispositivo vinculado.

        Returns:
            Número de mensajes recibidos
        """
        try:
            await self._establish()
            await self.listener.attach_callback(self.transport, self.target_device_id)
            await self._wait_for_messages(self.config.wait_time)
        finally:
            await self._drain()
        return self.listener.received

    async def execute(self) -> int:
        """Ejecuta el comando configurado."""
        if self.config.command == "send-data-from-bound-device":
            return await self.send_data_from_bound_device()
        if self.config.command == "listen-for-config-messages":
            return await self.listen_for_config_messages()
        return await self.run()

    def status(self) -> Dict[str, Any]:
        """Obtiene el estado actual del bucle."""
        return {
            "loop_state": self._state.value,
            "published": self._published,
            "token_refreshes": self._refreshes,
            "token_issued_at": self._credential.issued_at if self._credential else None,
            "bound_device": (
                self.target_device_id if self.binder.is_bound(self.target_device_id) else None
            ),
            "transport": self.transport.status(),
        }

    def __repr__(self) -> str:
        return f"SessionLoop(client_id={self.identity.client_id}, state={self._state.value})"
