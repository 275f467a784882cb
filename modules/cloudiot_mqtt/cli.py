"""CLI de la sesión MQTT con Cloud IoT.

Ejemplo:

    cloudiot-mqtt --project_id=blue-jet-123 --registry_id=my-registry \\
        --device_id=my-test-device --algorithm=RS256 \\
        --private_key_file=../path/to/rsa_private.pem
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from modules.cloudiot_mqtt.config import SessionConfig
from modules.cloudiot_mqtt.errors import SessionError
from modules.cloudiot_mqtt.session_loop import SessionLoop

logger = logging.getLogger(__name__)

COMMANDS = ("mqtt-demo", "listen-for-config-messages", "send-data-from-bound-device")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Conecta un dispositivo o gateway a Cloud IoT Core por MQTT usando JWT"
    )

    # Obligatorios
    parser.add_argument('--project_id', required=True, help='Proyecto GCP')
    parser.add_argument('--registry_id', required=True, help='Registro de Cloud IoT')
    parser.add_argument('--device_id', required=True, help='ID del dispositivo')
    parser.add_argument('--private_key_file', required=True, help='Ruta a la clave privada')
    parser.add_argument(
        '--algorithm',
        required=True,
        help="Algoritmo para firmar el JWT: 'RS256' o 'ES256'"
    )

    # Opcionales
    parser.add_argument('--gateway_id', help='ID del gateway')
    parser.add_argument('--command', choices=COMMANDS, default='mqtt-demo', help='Comando a ejecutar')
    parser.add_argument(
        '--telemetry_data',
        default='Specify with -telemetry_data',
        help='Datos (texto o JSON) a enviar en nombre del dispositivo vinculado'
    )
    parser.add_argument('--cloud_region', default='asia-east1', help='Región GCP')
    parser.add_argument('--num_messages', type=int, default=100, help='Número de mensajes a publicar')
    parser.add_argument('--mqtt_bridge_hostname', default='mqtt.googleapis.com', help='Host del bridge MQTT')
    parser.add_argument('--mqtt_bridge_port', type=int, default=8883, help='Puerto del bridge MQTT')
    parser.add_argument(
        '--token_exp_minutes',
        type=int,
        default=20,
        help='Minutos hasta refrescar el JWT (expiración del token)'
    )
    parser.add_argument(
        '--message_type',
        choices=('event', 'state'),
        default='event',
        help='Telemetría (event) o estado del dispositivo (state)'
    )
    parser.add_argument('--wait_time', type=int, default=120, help='Segundos de espera de comandos')
    parser.add_argument('--ca_certs', help='Certificados raíz (PEM); por defecto los del sistema')
    parser.add_argument(
        '--log_level',
        default='INFO',
        choices=('DEBUG', 'INFO', 'WARNING', 'ERROR'),
        help='Nivel de logging'
    )
    return parser


def config_from_args(args: argparse.Namespace) -> SessionConfig:
    values = vars(args).copy()
    values.pop('log_level', None)
    return SessionConfig(**values)


def show_status(console: Console, loop: SessionLoop):
    """Muestra el resumen final de la sesión."""
    status = loop.status()
    table = Table(title="Sesión MQTT")
    table.add_column("Campo", style="cyan")
    table.add_column("Valor")
    table.add_row("Client ID", status["transport"]["client_id"])
    table.add_row("Endpoint", status["transport"]["endpoint"])
    table.add_row("Estado", status["loop_state"])
    table.add_row("Publicados", str(status["published"]))
    table.add_row("Refrescos de token", str(status["token_refreshes"]))
    console.print(table)


def main(argv: Optional[List[str]] = None) -> int:
    """Función principal del CLI.

    Returns:
        0 si la ejecución terminó bien, 1 ante un error fatal
    """
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        config = config_from_args(args)
    except ValidationError as e:
        logger.error(f"Configuración inválida: {e}")
        return 1

    console = Console(stderr=True)
    loop = SessionLoop(config)
    try:
        asyncio.run(loop.execute())
    except SessionError as e:
        logger.error(f"Error fatal: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Interrumpido por el usuario")
        return 130
    finally:
        show_status(console, loop)

    logger.info("Sesión finalizada. ¡Hasta luego!")
    return 0


if __name__ == '__main__':
    sys.exit(main())
