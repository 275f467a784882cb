"""Proveedor de credenciales JWT.

Genera el token que el bridge MQTT espera en el campo password. El núcleo
solo conoce el texto del token y el instante en que se emitió.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

import jwt

from modules.cloudiot_mqtt.errors import AuthAlgorithmInvalid, TokenMintError

SUPPORTED_ALGORITHMS = AuthAlgorithmInvalid.SUPPORTED


@dataclass(frozen=True)
class Credential:
    """Token vigente y su instante de emisión (epoch, segundos)."""

    token: str
    issued_at: float

    def age(self, now: float) -> float:
        """Segundos transcurridos desde la emisión."""
        return now - self.issued_at

    def __repr__(self) -> str:
        return f"Credential(issued_at={self.issued_at:.0f})"


def check_algorithm(algorithm: str) -> str:
    """Valida el selector de algoritmo.

    Raises:
        AuthAlgorithmInvalid: Si no es RS256 ni ES256
    """
    if algorithm not in SUPPORTED_ALGORITHMS:
        raise AuthAlgorithmInvalid(algorithm)
    return algorithm


class TokenProvider:
    """Genera JWT firmados para autenticar la sesión.

    Claims: ``iat``, ``exp`` e ``aud`` (el ID del proyecto), tal como los
    valida el bridge MQTT.
    """

    def __init__(
        self,
        private_key_file: str,
        algorithm: str,
        token_exp_minutes: int = 20,
        clock: Optional[Callable[[], float]] = None,
    ):
        """Inicializa el proveedor.

        Args:
            private_key_file: Ruta a la clave privada PEM
            algorithm: RS256 o ES256
            token_exp_minutes: Validez del token en minutos
            clock: Reloj en segundos epoch (inyectable para tests)
        """
        self.private_key_file = private_key_file
        self.algorithm = algorithm
        self.token_exp_minutes = token_exp_minutes
        self._clock = clock or time.time
        self.logger = logging.getLogger(__name__)

    def _read_key(self) -> str:
        try:
            with open(self.private_key_file, "r") as f:
                return f.read()
        except OSError as e:
            raise TokenMintError(self.private_key_file, e) from e

    def mint(self, audience: str) -> Credential:
        """Genera una credencial nueva.

        Args:
            audience: Emisor/audiencia del token (ID del proyecto)

        Returns:
            Credencial con el token y su instante de emisión

        Raises:
            AuthAlgorithmInvalid: Si el algoritmo no está soportado
            TokenMintError: Si la clave no se puede leer o usar
        """
        check_algorithm(self.algorithm)

        issued_at = self._clock()
        claims = {
            "iat": int(issued_at),
            "exp": int(issued_at) + self.token_exp_minutes * 60,
            "aud": audience,
        }

        key = self._read_key()
        try:
            token = jwt.encode(claims, key, algorithm=self.algorithm)
        except (ValueError, TypeError, jwt.PyJWTError) as e:
            raise TokenMintError(self.private_key_file, e) from e

        self.logger.debug(
            f"Token {self.algorithm} generado para {audience} "
            f"(expira en {self.token_exp_minutes} min)"
        )
        return Credential(token=token, issued_at=issued_at)
