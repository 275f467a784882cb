"""Conector con back-off exponencial acotado en el tiempo.

Envuelve el connect de la sesión de transporte: reintenta los fallos de
conexión perdida o broker inalcanzable con intervalos crecientes, hasta un
máximo por intervalo y un presupuesto total de espera.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterator, Optional

from tenacity import AsyncRetrying, RetryCallState, RetryError, retry_if_exception_type

from modules.cloudiot_mqtt.errors import (
    ConnectionLost,
    ConnectionTimeoutExceeded,
    ServerUnreachable,
)
from modules.cloudiot_mqtt.tokens import Credential
from modules.cloudiot_mqtt.transport import ConnectionState

RETRYABLE_ERRORS = (ConnectionLost, ServerUnreachable)


@dataclass(frozen=True)
class BackoffPolicy:
    """Parámetros del back-off, en segundos."""

    initial_interval: float = 0.5
    multiplier: float = 1.5
    max_interval: float = 6.0
    max_total: float = 900.0

    def interval(self, retry_number: int) -> float:
        """Intervalo antes del reintento ``retry_number`` (desde 1)."""
        delay = self.initial_interval * (self.multiplier ** (retry_number - 1))
        return min(delay, self.max_interval)

    def intervals(self) -> Iterator[float]:
        """Secuencia completa de esperas que permite el presupuesto."""
        total = 0.0
        retry_number = 1
        while True:
            delay = self.interval(retry_number)
            if total + delay > self.max_total:
                return
            total += delay
            yield delay
            retry_number += 1


@dataclass
class BackoffState:
    """Estado de una secuencia de conexión."""

    current_interval: float
    total_elapsed: float = 0.0
    attempts: int = 0


class BackoffConnector:
    """Conecta la sesión con reintentos y back-off exponencial.

    Características:
    - Intervalo inicial 0.5s, multiplicador 1.5, máximo 6s por espera
    - Presupuesto total de espera de 15 minutos
    - Solo reintenta ConnectionLost y ServerUnreachable; el resto se propaga
    - El estado se reinicia en cada secuencia de conexión nueva
    """

    def __init__(
        self,
        policy: Optional[BackoffPolicy] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        """Inicializa el conector.

        Args:
            policy: Parámetros del back-off
            sleep: Corrutina de espera (inyectable para tests)
        """
        self.policy = policy or BackoffPolicy()
        self._sleep = sleep or asyncio.sleep
        self.logger = logging.getLogger(__name__)
        self.state = BackoffState(current_interval=self.policy.initial_interval)

    def reset(self):
        """Reinicia el estado a los valores iniciales."""
        self.state = BackoffState(current_interval=self.policy.initial_interval)

    def _wait(self, retry_state: RetryCallState) -> float:
        return self.policy.interval(retry_state.attempt_number)

    def _stop(self, retry_state: RetryCallState) -> bool:
        # Nunca esperar un intervalo que supere el presupuesto total
        upcoming = self.policy.interval(retry_state.attempt_number)
        return self.state.total_elapsed + upcoming > self.policy.max_total

    async def _sleep_and_track(self, seconds: float):
        await self._sleep(seconds)
        self.state.total_elapsed += seconds
        self.state.current_interval = min(
            seconds * self.policy.multiplier, self.policy.max_interval
        )

    def _before_sleep(self, retry_state: RetryCallState):
        error = retry_state.outcome.exception()
        self.logger.warning(f"Intento {retry_state.attempt_number} falló: {error}")
        self.logger.info(f"Reintentando en {retry_state.next_action.sleep:.3f}s")

    async def connect(self, session, credential: Credential) -> ConnectionState:
        """Conecta la sesión reintentando con back-off.

        Args:
            session: Sesión de transporte
            credential: Credencial a usar en todos los intentos

        Returns:
            ConnectionState.CONNECTED

        Raises:
            ConnectionTimeoutExceeded: Si se agota el presupuesto de espera
            SessionError: Cualquier error no reintentable, sin reintentar
        """
        self.reset()

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            wait=self._wait,
            stop=self._stop,
            sleep=self._sleep_and_track,
            before_sleep=self._before_sleep,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    self.state.attempts += 1
                    state = await session.connect(credential)
        except RetryError as e:
            last_error = e.last_attempt.exception()
            self.logger.error(
                f"Conexión fallida tras {self.state.attempts} intentos "
                f"y {self.state.total_elapsed:.1f}s de espera"
            )
            raise ConnectionTimeoutExceeded(
                self.state.total_elapsed,
                self.policy.max_total,
                self.state.attempts,
                last_error,
            ) from last_error

        self.logger.info(f"Conectado en el intento {self.state.attempts}")
        return state

    def __repr__(self) -> str:
        return (
            f"BackoffConnector("
            f"attempts={self.state.attempts}, "
            f"elapsed={self.state.total_elapsed:.2f}s"
            f")"
        )
