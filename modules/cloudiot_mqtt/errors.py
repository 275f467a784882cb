"""Excepciones de la sesión MQTT con Cloud IoT.

Define la taxonomía de errores del ciclo de vida de la sesión. Los errores
reintentables (``ConnectionLost`` y ``ServerUnreachable``) solo se reintentan
dentro del conector con back-off; en cualquier otro punto son fatales.
"""

from typing import Optional


class SessionError(Exception):
    """Excepción base para errores de la sesión.

    Todas las excepciones específicas de la sesión heredan de esta clase.
    """

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        """Inicializa la excepción base.

        Args:
            message: Mensaje de error
            original_error: Excepción original que causó este error
        """
        super().__init__(message)
        self.message = message
        self.original_error = original_error

    def __str__(self) -> str:
        if self.original_error:
            return f"{self.message} (Causa: {self.original_error})"
        return self.message


class AuthAlgorithmInvalid(SessionError):
    """Algoritmo de firma no soportado. Fatal, sin reintentos."""

    SUPPORTED = ("RS256", "ES256")

    def __init__(self, algorithm: str):
        message = (
            f"Algoritmo inválido {algorithm}. "
            f"Debe ser uno de {' o '.join(repr(a) for a in self.SUPPORTED)}."
        )
        super().__init__(message)
        self.algorithm = algorithm


class TokenMintError(SessionError):
    """No se pudo generar el token (clave ilegible o inválida)."""

    def __init__(self, key_path: str, original_error: Optional[Exception] = None):
        super().__init__(f"No se pudo firmar el token con la clave {key_path}", original_error)
        self.key_path = key_path


class ConnectionLost(SessionError):
    """La conexión con el broker se perdió.

    Reintentable solo durante la conexión inicial.
    """

    retryable = True


class ServerUnreachable(SessionError):
    """No se pudo alcanzar el broker (socket, DNS, timeout).

    Reintentable solo durante la conexión inicial.
    """

    retryable = True


class ConnectionRefused(SessionError):
    """El broker rechazó la conexión por un motivo no reintentable."""

    retryable = False


class ConnectionTimeoutExceeded(SessionError):
    """Se agotó el presupuesto total de back-off sin conectar."""

    def __init__(
        self,
        total_elapsed: float,
        max_total: float,
        attempts: int,
        original_error: Optional[Exception] = None,
    ):
        message = (
            f"No se pudo conectar tras {attempts} intentos "
            f"({total_elapsed:.1f}s de espera, máximo {max_total:.1f}s)"
        )
        super().__init__(message, original_error)
        self.total_elapsed = total_elapsed
        self.max_total = max_total
        self.attempts = attempts


class PayloadDecodeFailure(SessionError):
    """Un mensaje entrante no es texto UTF-8 válido.

    Se registra y el mensaje se descarta; nunca interrumpe el bucle.
    """

    def __init__(self, topic: str, original_error: Optional[Exception] = None):
        super().__init__(f"Payload inválido en {topic}", original_error)
        self.topic = topic


class PublishFailure(SessionError):
    """Error publicando un mensaje. Fatal: no se reintenta."""

    def __init__(self, topic: str, original_error: Optional[Exception] = None):
        super().__init__(f"Error publicando en {topic}", original_error)
        self.topic = topic


class SubscribeFailure(PublishFailure):
    """El broker rechazó o no confirmó una suscripción."""

    def __init__(self, topic: str, original_error: Optional[Exception] = None):
        SessionError.__init__(self, f"Error suscribiéndose a {topic}", original_error)
        self.topic = topic
