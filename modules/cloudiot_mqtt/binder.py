"""Vinculación de dispositivos a un gateway.

Publica los mensajes de control attach/detach que asocian la identidad de un
dispositivo con la sesión activa del gateway.
"""

import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional

from modules.cloudiot_mqtt.transport import QOS_AT_LEAST_ONCE

ATTACH_PAYLOAD = "{}"


def attach_topic(device_id: str) -> str:
    return f"/devices/{device_id}/attach"


def detach_topic(device_id: str) -> str:
    return f"/devices/{device_id}/detach"


@dataclass(frozen=True)
class BoundDeviceBinding:
    """Vinculación activa de un dispositivo con la sesión."""

    device_id: str
    bound_at: float


class IdentityBinder:
    """Emite attach/detach en nombre de la sesión del gateway.

    Mantiene como máximo una vinculación por dispositivo; un attach repetido
    del mismo dispositivo vuelve a publicar el mensaje de control y renueva
    ``bound_at``.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._bindings: Dict[str, BoundDeviceBinding] = {}

    async def attach(self, session, device_id: str) -> BoundDeviceBinding:
        """Vincula el dispositivo a la sesión del gateway (qos=1).

        Raises:
            ConnectionLost: Si la sesión no está conectada
            PublishFailure: Si la publicación falla
        """
        topic = attach_topic(device_id)
        self.logger.info(f"Vinculando: {topic}")
        await session.publish(topic, ATTACH_PAYLOAD, qos=QOS_AT_LEAST_ONCE)

        binding = BoundDeviceBinding(device_id=device_id, bound_at=time.time())
        self._bindings[device_id] = binding
        return binding

    async def detach(self, session, device_id: str):
        """Desvincula el dispositivo de la sesión del gateway (qos=1)."""
        topic = detach_topic(device_id)
        self.logger.info(f"Desvinculando: {topic}")
        try:
            await session.publish(topic, ATTACH_PAYLOAD, qos=QOS_AT_LEAST_ONCE)
        finally:
            self._bindings.pop(device_id, None)

    def binding(self, device_id: str) -> Optional[BoundDeviceBinding]:
        return self._bindings.get(device_id)

    def is_bound(self, device_id: str) -> bool:
        return device_id in self._bindings

    def release(self, device_id: str):
        """Olvida la vinculación sin publicar (la sesión ya terminó)."""
        self._bindings.pop(device_id, None)

    async def unbind(self, session, device_id: str):
        """Cierra la vinculación del dispositivo, si existe.

        Emite el detach cuando la sesión sigue conectada; si no, solo olvida
        la vinculación. Un fallo al publicar el detach se registra y no se
        propaga, para no ocultar el error que provocó el cierre.
        """
        if not self.is_bound(device_id):
            return

        if not session.is_connected:
            self.logger.warning(f"Sesión desconectada, no se puede desvincular {device_id}")
            self.release(device_id)
            return

        try:
            await self.detach(session, device_id)
        except Exception as e:
            self.logger.error(f"Error desvinculando {device_id}: {e}")
