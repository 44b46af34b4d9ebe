"""Command-line interface for the CNC Fleet Simulator."""

import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import click

from . import __version__
from .config import Config
from .fleet import Fleet, TickDriver
from .metrics import plant_status, production_summary
from .mqtt_client import command_topic

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

DEFAULT_TOPIC_PREFIX = "fleet-sim"


def _load_config(config_path: Optional[Path]) -> Config:
    """YAML file (if any), then environment overrides."""
    base = Config.from_yaml(config_path) if config_path else None
    return Config.from_env(base)


def _publish_command(broker: str, port: int, topic: str, payload: Dict[str, Any]) -> None:
    import paho.mqtt.client as mqtt

    client = mqtt.Client(callback_api_version=mqtt.CallbackAPIVersion.VERSION2)

    try:
        client.connect(broker, port)
        client.loop_start()
        result = client.publish(topic, json.dumps(payload), qos=1)
        result.wait_for_publish(timeout=5)
        client.loop_stop()
        client.disconnect()
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(f"  Topic: {topic}")
    click.echo(f"  Payload: {json.dumps(payload)}")


def mqtt_options(func):
    """Broker connection options shared by the MQTT control commands."""
    func = click.option(
        "--prefix", default=DEFAULT_TOPIC_PREFIX, help="MQTT topic prefix"
    )(func)
    func = click.option("--port", "-p", type=int, default=1883, help="MQTT broker port")(func)
    func = click.option("--broker", "-b", default="localhost", help="MQTT broker address")(func)
    return func


@click.group()
@click.version_option(version=__version__)
def main():
    """CNC Fleet Simulator - simulated machine-shop telemetry.

    Simulates a fleet of CNC mills, lathes, press brakes and fiber lasers
    with realistic cycle phases, alarms and wear, and serves the live state
    over REST, WebSocket and (optionally) MQTT.
    """
    pass


@main.command()
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to config.yaml",
)
@click.option("--host", default=None, help="Bind address (default: 0.0.0.0)")
@click.option("--port", "-p", type=int, default=None, help="HTTP port (default: 5000)")
@click.option("--tick-ms", type=click.IntRange(min=1), default=None, help="Tick period in ms")
@click.option("--seed", type=int, default=None, help="Random seed for a reproducible fleet")
@click.option("--mqtt/--no-mqtt", "mqtt_enabled", default=None, help="Enable the MQTT bridge")
@click.option("--broker", "-b", default=None, help="MQTT broker address")
@click.option("--mqtt-port", type=int, default=None, help="MQTT broker port")
@click.option("--dry-run", is_flag=True, default=False, help="Log MQTT publishes instead of sending")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Debug logging")
def run(config_path, host, port, tick_ms, seed, mqtt_enabled, broker, mqtt_port, dry_run, verbose):
    """Start the simulator and serve the REST / WebSocket API."""
    from .mqtt_client import MQTTClient
    from .server import run_server

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    cfg = _load_config(config_path)
    if host:
        cfg.server.host = host
    if port:
        cfg.server.port = port
    if tick_ms:
        cfg.simulation.tick_interval_ms = tick_ms
    if seed is not None:
        cfg.simulation.random_seed = seed
    if mqtt_enabled is not None:
        cfg.mqtt.enabled = mqtt_enabled
    if broker:
        cfg.mqtt.broker = broker
    if mqtt_port:
        cfg.mqtt.port = mqtt_port

    fleet = Fleet.from_config(cfg)

    mqtt_client = None
    if cfg.mqtt.enabled:
        mqtt_client = MQTTClient(cfg.mqtt, fleet)
        if not mqtt_client.connect(dry_run=dry_run):
            click.echo(
                f"Error: could not connect to MQTT broker {cfg.mqtt.broker}:{cfg.mqtt.port}",
                err=True,
            )
            sys.exit(1)

    for sim in fleet:
        logger.info(f"  - {sim.state.name} ({sim.state.model}) - {sim.state.machine_type.value}")

    run_server(cfg, fleet=fleet, mqtt_client=mqtt_client)


@main.command()
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    default=Path("config"),
    help="Output directory for config files",
)
def init(output):
    """Generate a sample configuration file.

    Creates config.yaml with the demo fleet and default server, simulation
    and MQTT settings.
    """
    output.mkdir(parents=True, exist_ok=True)

    cfg = Config.default()
    config_path = output / "config.yaml"
    cfg.to_yaml(config_path)

    click.echo(f"Created: {config_path}")
    click.echo()
    click.echo("Edit the config file to customize:")
    click.echo("  - Machines (id, model, type, material, spec overrides)")
    click.echo("  - Tick period and random seed")
    click.echo("  - MQTT broker settings")
    click.echo()
    click.echo(f"Run with: fleet-sim run --config {config_path}")


@main.command()
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to config.yaml",
)
def fleet(config_path):
    """List the configured machines and their key specs."""
    cfg = _load_config(config_path)

    click.echo(f"Fleet ({len(cfg.machines)} machines)")
    click.echo("=" * 72)
    for machine in cfg.machines:
        spec = machine.build_spec()
        if machine.machine_type.has_tooling:
            detail = f"{spec.max_rpm:.0f} RPM, {spec.tool_capacity} tools"
        elif spec.max_tonnage is not None:
            detail = f"{spec.max_tonnage:.0f} t"
        else:
            detail = f"{spec.max_laser_power:.0f} W"
        travel = " ".join(f"{axis}{spec.upper(axis):.0f}" for axis in ("X", "Y", "Z"))
        click.echo(
            f"{machine.id:<14} {machine.name:<20} {machine.model:<7} "
            f"{machine.machine_type.value:<12} {travel:<18} {detail}"
        )


@main.command()
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to config.yaml",
)
@click.option("--ticks", "-n", type=click.IntRange(min=1), default=30, help="Number of ticks")
@click.option("--tick-ms", type=click.IntRange(min=1), default=None, help="Simulated ms per tick")
@click.option("--seed", type=int, default=None, help="Random seed")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the final PLANT_UPDATE")
def simulate(config_path, ticks, tick_ms, seed, as_json):
    """Advance the fleet offline and print the outcome."""
    cfg = _load_config(config_path)
    if tick_ms:
        cfg.simulation.tick_interval_ms = tick_ms
    if seed is not None:
        cfg.simulation.random_seed = seed

    plant = Fleet.from_config(cfg)
    driver = TickDriver(plant, tick_interval_ms=cfg.simulation.tick_interval_ms)
    update = None
    for _ in range(ticks):
        update = driver.tick()

    if as_json:
        click.echo(json.dumps(update, indent=2))
        return

    simulated = ticks * driver.dt
    status = plant.summarize(plant_status)
    production = plant.summarize(production_summary)

    click.echo(f"Simulated {ticks} ticks ({simulated:.0f} s)")
    click.echo("=" * 60)
    for row in production["machines"]:
        click.echo(
            f"{row['id']:<14} {row['execution']:<8} parts={row['partCount']:<4} "
            f"rate={row['productionRate']}/h"
        )
    click.echo("-" * 60)
    click.echo(
        f"Running: {status['running']}  Idle: {status['idle']}  "
        f"Alarm: {status['alarm']}  Stopped: {status['stopped']}"
    )
    click.echo(f"Total parts: {production['totals']['parts']}")


@main.command()
@mqtt_options
@click.argument("machine_id")
@click.argument("state", type=click.Choice(["on", "off"]))
def power(broker, port, prefix, machine_id, state):
    """Switch a machine on or off via MQTT."""
    _publish_command(
        broker, port, command_topic(prefix, machine_id, "power"), {"power": state == "on"}
    )
    click.echo(f"Set power of '{machine_id}' to {state}")


@main.command("inject-alarm")
@mqtt_options
@click.option("--code", type=int, default=None, help="Alarm code (omit for none)")
@click.option("--message", "-m", required=True, help="Alarm message")
@click.argument("machine_id")
def inject_alarm(broker, port, prefix, code, message, machine_id):
    """Raise an alarm on a machine via MQTT."""
    if not message:
        raise click.BadParameter("must not be empty", param_hint="--message")
    _publish_command(
        broker,
        port,
        command_topic(prefix, machine_id, "alarm"),
        {"code": code, "message": message},
    )
    click.echo(f"Injected alarm on '{machine_id}': {message}")


@main.command("clear-alarm")
@mqtt_options
@click.argument("machine_id")
def clear_alarm(broker, port, prefix, machine_id):
    """Clear the active alarm of a machine via MQTT."""
    _publish_command(broker, port, command_topic(prefix, machine_id, "clear"), {})
    click.echo(f"Requested alarm clear on '{machine_id}'")


@main.command()
@mqtt_options
@click.option(
    "--filter",
    "-f",
    "topic_filter",
    default="#",
    help="Topic filter below the prefix (default: # for all)",
)
def subscribe(broker, port, prefix, topic_filter):
    """Subscribe to simulator topics and display messages."""
    import paho.mqtt.client as mqtt

    full_topic = f"{prefix}/{topic_filter}"

    def on_message(client, userdata, msg):
        short_topic = msg.topic.replace(prefix + "/", "")
        try:
            payload = json.loads(msg.payload.decode())
            click.echo(f"{short_topic}: {json.dumps(payload, indent=2)}")
        except (UnicodeDecodeError, json.JSONDecodeError):
            click.echo(f"{short_topic}: {msg.payload!r}")

    def on_connect(client, userdata, flags, rc, properties=None):
        if rc == 0:
            client.subscribe(full_topic)
            click.echo(f"Subscribed to: {full_topic}")
            click.echo("Press Ctrl+C to stop")
            click.echo("-" * 40)

    client = mqtt.Client(callback_api_version=mqtt.CallbackAPIVersion.VERSION2)
    client.on_connect = on_connect
    client.on_message = on_message

    try:
        client.connect(broker, port)
        client.loop_forever()
    except KeyboardInterrupt:
        click.echo("\nDisconnected")
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
