"""Cloud IoT MQTT Session

Módulo para mantener una sesión MQTT + TLS autenticada con JWT contra el
bridge de Cloud IoT: conexión con back-off, attach/detach de dispositivos
vinculados a un gateway, escucha de configuración y comandos, y publicación
programada con refresco de credenciales.
"""

from modules.cloudiot_mqtt.backoff import BackoffConnector, BackoffPolicy, BackoffState
from modules.cloudiot_mqtt.binder import BoundDeviceBinding, IdentityBinder
from modules.cloudiot_mqtt.config import PublishSchedule, SessionConfig, SessionIdentity
from modules.cloudiot_mqtt.errors import (
    AuthAlgorithmInvalid,
    ConnectionLost,
    ConnectionRefused,
    ConnectionTimeoutExceeded,
    PayloadDecodeFailure,
    PublishFailure,
    ServerUnreachable,
    SessionError,
    SubscribeFailure,
    TokenMintError,
)
from modules.cloudiot_mqtt.listener import InboundListener
from modules.cloudiot_mqtt.session_loop import LoopState, SessionLoop
from modules.cloudiot_mqtt.tokens import Credential, TokenProvider
from modules.cloudiot_mqtt.transport import ConnectionState, TransportSession

__version__ = "1.0.0"
__all__ = [
    "BackoffConnector",
    "BackoffPolicy",
    "BackoffState",
    "BoundDeviceBinding",
    "IdentityBinder",
    "PublishSchedule",
    "SessionConfig",
    "SessionIdentity",
    "AuthAlgorithmInvalid",
    "ConnectionLost",
    "ConnectionRefused",
    "ConnectionTimeoutExceeded",
    "PayloadDecodeFailure",
    "PublishFailure",
    "ServerUnreachable",
    "SessionError",
    "SubscribeFailure",
    "TokenMintError",
    "InboundListener",
    "LoopState",
    "SessionLoop",
    "Credential",
    "TokenProvider",
    "ConnectionState",
    "TransportSession",
]
