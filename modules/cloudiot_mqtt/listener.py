"""Escucha de mensajes entrantes (configuración, comandos y errores)."""

import logging
import threading
from typing import Callable, Optional

from modules.cloudiot_mqtt.errors import PayloadDecodeFailure
from modules.cloudiot_mqtt.transport import QOS_AT_LEAST_ONCE, QOS_AT_MOST_ONCE

logger = logging.getLogger(__name__)

MessageConsumer = Callable[[str, str], None]


def config_topic(device_id: str) -> str:
    return f"/devices/{device_id}/config"


def commands_topic(device_id: str) -> str:
    return f"/devices/{device_id}/commands/#"


def errors_topic(gateway_id: str) -> str:
    return f"/devices/{gateway_id}/errors"


def log_payload(topic: str, payload: str):
    """Consumidor por defecto: solo registra el mensaje."""
    logger.info(f"Payload en {topic}: {payload}")


class InboundListener:
    """Suscribe los tópicos de entrada y despacha sus mensajes.

    El manejador se ejecuta en el hilo de entrega del transporte, en paralelo
    con el bucle de sesión; solo decodifica y reenvía al consumidor. Los
    contadores se actualizan bajo ``_lock``.
    """

    def __init__(self, consumer: Optional[MessageConsumer] = None):
        """Inicializa el listener.

        Args:
            consumer: Consumidor de aplicación ``(topic, texto)``
        """
        self.consumer = consumer or log_payload
        self._lock = threading.Lock()
        self._received = 0
        self._dropped = 0

    @property
    def received(self) -> int:
        """Mensajes entregados al consumidor."""
        with self._lock:
            return self._received

    @property
    def dropped(self) -> int:
        """Mensajes descartados por payload inválido."""
        with self._lock:
            return self._dropped

    def handle_message(self, topic: str, payload: bytes):
        """Decodifica el payload como UTF-8 y lo reenvía al consumidor.

        Los fallos de decodificación se registran y el mensaje se descarta.
        """
        try:
            text = bytes(payload).decode("utf-8")
        except UnicodeDecodeError as e:
            with self._lock:
                self._dropped += 1
            logger.warning(str(PayloadDecodeFailure(topic, e)))
            return

        with self._lock:
            self._received += 1
        try:
            self.consumer(topic, text)
        except Exception as e:
            logger.error(f"Error en el consumidor de {topic}: {e}")

    async def attach_callback(self, session, device_id: str):
        """Suscribe config y comandos del dispositivo e instala el manejador.

        Args:
            session: Sesión de transporte conectada
            device_id: Dispositivo cuyos tópicos se escuchan
        """
        session.set_message_handler(self.handle_message)
        await session.subscribe(config_topic(device_id), qos=QOS_AT_LEAST_ONCE)
        await session.subscribe(commands_topic(device_id), qos=QOS_AT_LEAST_ONCE)

    async def listen_for_errors(self, session, gateway_id: str):
        """Suscribe el flujo de errores del gateway (qos=0)."""
        session.set_message_handler(self.handle_message)
        await session.subscribe(errors_topic(gateway_id), qos=QOS_AT_MOST_ONCE)
