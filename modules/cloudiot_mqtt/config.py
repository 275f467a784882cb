"""Configuración de la sesión MQTT.

Modelo Pydantic con la configuración completa que consume el núcleo
(producido por la CLI o por variables de entorno), más las estructuras
inmutables derivadas: identidad de la sesión y calendario de publicación.
"""

import os
from dataclasses import dataclass
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

# Pausa fija después de cada publicación, en segundos
EVENT_INTERVAL = 5.0
STATE_INTERVAL = 15.0

GATEWAY_COMMANDS = ("listen-for-config-messages", "send-data-from-bound-device")


@dataclass(frozen=True)
class SessionIdentity:
    """Identidad de la sesión, inmutable mientras dure."""

    project_id: str
    cloud_region: str
    registry_id: str
    device_id: str
    host: str
    port: int
    algorithm: str

    @property
    def client_id(self) -> str:
        """Client ID en el formato que exige el bridge MQTT."""
        return (
            f"projects/{self.project_id}/locations/{self.cloud_region}"
            f"/registries/{self.registry_id}/devices/{self.device_id}"
        )

    @property
    def server_address(self) -> str:
        return f"ssl://{self.host}:{self.port}"


@dataclass(frozen=True)
class PublishSchedule:
    """Calendario de publicación del bucle de sesión."""

    message_type: str
    count: int

    @property
    def sub_topic(self) -> str:
        return "events" if self.message_type == "event" else "state"

    @property
    def interval(self) -> float:
        # El estado cambia con menos frecuencia que la telemetría
        return EVENT_INTERVAL if self.message_type == "event" else STATE_INTERVAL


class SessionConfig(BaseModel):
    """Configuración completa de una ejecución.

    El algoritmo se deja como texto libre: lo valida el proveedor de tokens
    para que un selector inválido sea el error fatal ``AuthAlgorithmInvalid``.
    """

    project_id: str = Field(..., min_length=1, description="Proyecto GCP")
    registry_id: str = Field(..., min_length=1, description="Registro de Cloud IoT")
    device_id: str = Field(..., min_length=1, description="ID del dispositivo")
    gateway_id: Optional[str] = Field(None, description="ID del gateway (opcional)")
    private_key_file: str = Field(..., min_length=1, description="Ruta a la clave privada")
    algorithm: str = Field(..., description="Algoritmo de firma del JWT: RS256 o ES256")
    ca_certs: Optional[str] = Field(None, description="Certificados raíz (PEM)")

    cloud_region: str = Field("asia-east1", min_length=1)
    mqtt_bridge_hostname: str = Field("mqtt.googleapis.com", min_length=1)
    mqtt_bridge_port: int = Field(8883, ge=1, le=65535)

    command: Literal[
        "mqtt-demo",
        "listen-for-config-messages",
        "send-data-from-bound-device",
    ] = "mqtt-demo"
    message_type: Literal["event", "state"] = "event"
    num_messages: int = Field(100, ge=0, description="Número de mensajes a publicar")
    token_exp_minutes: int = Field(20, ge=1, description="Minutos hasta refrescar el JWT")
    wait_time: int = Field(120, ge=0, description="Segundos de espera de comandos")
    telemetry_data: str = "Specify with -telemetry_data"

    @field_validator("project_id", "registry_id", "device_id", "gateway_id")
    @classmethod
    def validate_identifier(cls, v):
        """Los IDs forman parte de tópicos MQTT: sin separadores ni comodines."""
        if v is None:
            return v
        v = v.strip()
        if not v:
            raise ValueError("El identificador no puede estar vacío")
        if any(c in v for c in "/+#"):
            raise ValueError(f"Identificador inválido '{v}': no puede contener '/', '+' ni '#'")
        return v

    @model_validator(mode="after")
    def validate_gateway_command(self):
        if self.command in GATEWAY_COMMANDS and not self.gateway_id:
            raise ValueError(f"El comando '{self.command}' requiere gateway_id")
        return self

    @classmethod
    def from_env(cls, **overrides) -> "SessionConfig":
        """Crea la configuración desde variables de entorno.

        Variables esperadas:
        - CLOUDIOT_PROJECT_ID
        - CLOUDIOT_REGISTRY_ID
        - CLOUDIOT_DEVICE_ID
        - CLOUDIOT_PRIVATE_KEY_FILE
        - CLOUDIOT_ALGORITHM
        - CLOUDIOT_GATEWAY_ID, CLOUDIOT_REGION, CLOUDIOT_CA_CERTS (opcionales)

        Args:
            **overrides: Valores que tienen prioridad sobre el entorno

        Raises:
            ValueError: Si faltan variables de entorno
        """
        required_vars = {
            "project_id": "CLOUDIOT_PROJECT_ID",
            "registry_id": "CLOUDIOT_REGISTRY_ID",
            "device_id": "CLOUDIOT_DEVICE_ID",
            "private_key_file": "CLOUDIOT_PRIVATE_KEY_FILE",
            "algorithm": "CLOUDIOT_ALGORITHM",
        }
        optional_vars = {
            "gateway_id": "CLOUDIOT_GATEWAY_ID",
            "cloud_region": "CLOUDIOT_REGION",
            "ca_certs": "CLOUDIOT_CA_CERTS",
            "mqtt_bridge_hostname": "CLOUDIOT_MQTT_HOST",
            "mqtt_bridge_port": "CLOUDIOT_MQTT_PORT",
        }

        missing_vars = [
            var for field, var in required_vars.items()
            if field not in overrides and not os.getenv(var)
        ]
        if missing_vars:
            raise ValueError(f"Variables de entorno faltantes: {missing_vars}")

        values = {}
        for field, var in {**required_vars, **optional_vars}.items():
            if os.getenv(var):
                values[field] = os.getenv(var)
        values.update(overrides)
        return cls(**values)

    @property
    def is_gateway(self) -> bool:
        return self.gateway_id is not None

    @property
    def session_device_id(self) -> str:
        """ID con el que se identifica la conexión (gateway o dispositivo)."""
        return self.gateway_id if self.gateway_id else self.device_id

    def identity(self) -> SessionIdentity:
        return SessionIdentity(
            project_id=self.project_id,
            cloud_region=self.cloud_region,
            registry_id=self.registry_id,
            device_id=self.session_device_id,
            host=self.mqtt_bridge_hostname,
            port=self.mqtt_bridge_port,
            algorithm=self.algorithm,
        )

    def schedule(self) -> PublishSchedule:
        return PublishSchedule(message_type=self.message_type, count=self.num_messages)
