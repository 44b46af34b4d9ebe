"""MQTT bridge: publishes plant updates and accepts machine commands."""

import json
import logging
import threading
import time
from dataclasses import dataclass
from queue import Empty, Queue
from typing import Any, Dict, Optional, Tuple

import paho.mqtt.client as mqtt

from .config import MQTTConfig
from .fleet import Fleet, MachineNotFoundError

logger = logging.getLogger(__name__)

COMMANDS = ("power", "alarm", "clear")
STATUS_EVERY_UPDATES = 30


def command_topic(topic_prefix: str, machine_id: str, command: str) -> str:
    return f"{topic_prefix}/machines/{machine_id}/command/{command}"


@dataclass
class Message:
    """MQTT message to be published."""

    topic: str
    payload: Dict[str, Any]
    retain: bool = False
    qos: int = 1


@dataclass
class Command:
    """A validated machine command received over MQTT."""

    machine_id: str
    name: str
    power: Optional[bool] = None
    code: Any = None
    message: Optional[str] = None


def parse_command(topic_prefix: str, topic: str, raw_payload: bytes) -> Command:
    """Parse ``{prefix}/machines/{id}/command/{name}`` and validate its body.

    Raises ``ValueError`` for unknown topics or invalid payloads.
    """
    parts = topic.split("/")
    prefix_parts = topic_prefix.split("/")
    n = len(prefix_parts)
    if (
        parts[:n] != prefix_parts
        or len(parts) != n + 4
        or parts[n] != "machines"
        or parts[n + 2] != "command"
    ):
        raise ValueError(f"Not a command topic: {topic}")

    machine_id, name = parts[n + 1], parts[n + 3]
    if name not in COMMANDS:
        raise ValueError(f"Unknown command '{name}'")

    body: Dict[str, Any] = {}
    if raw_payload:
        try:
            body = json.loads(raw_payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValueError(f"Invalid JSON payload: {e}") from None
        if not isinstance(body, dict):
            raise ValueError("Payload must be a JSON object")

    if name == "power":
        power = body.get("power")
        if not isinstance(power, bool):
            raise ValueError("Invalid power state")
        return Command(machine_id, name, power=power)

    if name == "alarm":
        message = body.get("message")
        if not isinstance(message, str) or not message:
            raise ValueError("Alarm message required")
        # any code is passed through; missing or falsy means none
        return Command(machine_id, name, code=body.get("code") or None, message=message)

    return Command(machine_id, name)


class MQTTClient:
    """MQTT client with a publish queue and fleet command handling."""

    def __init__(self, mqtt_config: MQTTConfig, fleet: Optional[Fleet] = None):
        self.mqtt_config = mqtt_config
        self.fleet = fleet

        self._client: Optional[mqtt.Client] = None
        self._connected = False
        self._publish_queue: "Queue[Message]" = Queue()
        self._publish_thread: Optional[threading.Thread] = None
        self._running = False
        self._dry_run = False

        # Stats
        self._messages_published = 0
        self._messages_dropped = 0
        self._commands_handled = 0
        self._commands_rejected = 0
        self._plant_updates = 0

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def topic_prefix(self) -> str:
        return self.mqtt_config.topic_prefix

    @property
    def status_topic(self) -> str:
        return f"{self.topic_prefix}/status"

    @property
    def plant_topic(self) -> str:
        return f"{self.topic_prefix}/plant"

    @property
    def command_filter(self) -> str:
        return f"{self.topic_prefix}/machines/+/command/+"

    def machine_state_topic(self, machine_id: str) -> str:
        return f"{self.topic_prefix}/machines/{machine_id}/state"

    def command_topic(self, machine_id: str, command: str) -> str:
        return command_topic(self.topic_prefix, machine_id, command)

    def connect(self, dry_run: bool = False) -> bool:
        """Connect to the MQTT broker."""
        self._dry_run = dry_run

        if dry_run:
            logger.info("Dry run mode - not connecting to MQTT broker")
            self._connected = True
            self._start_publish_thread()
            return True

        try:
            self._client = mqtt.Client(
                client_id=self.mqtt_config.client_id,
                callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            )

            if self.mqtt_config.username:
                self._client.username_pw_set(self.mqtt_config.username, self.mqtt_config.password)

            self._client.on_connect = self._on_connect
            self._client.on_disconnect = self._on_disconnect
            self._client.on_message = self._on_message

            logger.info(
                f"Connecting to MQTT broker {self.mqtt_config.broker}:{self.mqtt_config.port}"
            )
            self._client.connect(self.mqtt_config.broker, self.mqtt_config.port)
            self._client.loop_start()

            # Wait for connection
            timeout = 10
            start = time.time()
            while not self._connected and (time.time() - start) < timeout:
                time.sleep(0.1)

            if self._connected:
                self._start_publish_thread()
                self.publish_status()

            return self._connected

        except Exception as e:
            logger.error(f"Failed to connect to MQTT broker: {e}")
            return False

    def disconnect(self) -> None:
        """Disconnect from the MQTT broker."""
        self._running = False

        if self._publish_thread:
            self._publish_thread.join(timeout=2)

        if self._client and not self._dry_run:
            self._client.loop_stop()
            self._client.disconnect()

        self._connected = False
        logger.info("Disconnected from MQTT broker")

    # =========================================================================
    # Publishing
    # =========================================================================

    def publish(self, topic: str, payload: Dict[str, Any], retain: bool = False) -> bool:
        """Queue a message for publishing."""
        if not self._connected:
            self._messages_dropped += 1
            return False
        msg = Message(topic=topic, payload=payload, retain=retain, qos=self.mqtt_config.qos)
        self._publish_queue.put(msg)
        return True

    def publish_plant_update(self, update: Dict[str, Any]) -> None:
        """Publish the plant message and one retained state per machine.

        Usable directly as a ``TickDriver`` listener.
        """
        self.publish(self.plant_topic, update)
        for snapshot in update.get("machines", []):
            self.publish(self.machine_state_topic(snapshot["id"]), snapshot, retain=True)
        self._plant_updates += 1
        if self._plant_updates % STATUS_EVERY_UPDATES == 0:
            self.publish_status()

    def publish_status(self) -> None:
        status = {
            "connected": self._connected,
            "machines": len(self.fleet) if self.fleet is not None else 0,
            "messages_published": self._messages_published,
            "messages_dropped": self._messages_dropped,
            "commands_handled": self._commands_handled,
            "commands_rejected": self._commands_rejected,
            "timestamp_ms": int(time.time() * 1000),
        }
        self.publish(self.status_topic, status, retain=True)

    def _start_publish_thread(self) -> None:
        self._running = True
        self._publish_thread = threading.Thread(target=self._publish_loop, daemon=True)
        self._publish_thread.start()

    def _publish_loop(self) -> None:
        """Background thread that publishes queued messages."""
        while self._running:
            try:
                msg = self._publish_queue.get(timeout=0.1)
                self._do_publish(msg)
            except Empty:
                continue

    def _do_publish(self, msg: Message) -> None:
        payload_str = json.dumps(msg.payload)

        if self._dry_run:
            logger.debug(f"[DRY RUN] {msg.topic}: {payload_str[:100]}")
            self._messages_published += 1
            return

        if self._client and self._connected:
            try:
                result = self._client.publish(msg.topic, payload_str, qos=msg.qos, retain=msg.retain)
                if result.rc == mqtt.MQTT_ERR_SUCCESS:
                    self._messages_published += 1
                else:
                    self._messages_dropped += 1
                    logger.warning(f"Failed to publish to {msg.topic}: {result.rc}")
            except Exception as e:
                self._messages_dropped += 1
                logger.error(f"Error publishing to {msg.topic}: {e}")
        else:
            self._messages_dropped += 1

    # =========================================================================
    # Commands
    # =========================================================================

    def handle_command(self, topic: str, raw_payload: bytes) -> Tuple[bool, str]:
        """Apply a command message to the fleet. Returns (applied, detail)."""
        try:
            command = parse_command(self.topic_prefix, topic, raw_payload)
        except ValueError as e:
            self._commands_rejected += 1
            logger.warning(f"Rejected command on {topic}: {e}")
            return False, str(e)

        if self.fleet is None:
            self._commands_rejected += 1
            logger.warning(f"No fleet attached, dropping command on {topic}")
            return False, "no fleet"

        try:
            if command.name == "power":
                self.fleet.set_power(command.machine_id, command.power)
                detail = f"power {'on' if command.power else 'off'}"
            elif command.name == "alarm":
                self.fleet.inject_alarm(command.machine_id, command.code, command.message)
                detail = f"alarm {command.message}"
            else:
                cleared = self.fleet.clear_alarm(command.machine_id)
                detail = "alarm cleared" if cleared else "no active alarm"
        except MachineNotFoundError as e:
            self._commands_rejected += 1
            logger.warning(str(e))
            return False, str(e)

        self._commands_handled += 1
        logger.info(f"MQTT command for {command.machine_id}: {detail}")
        return True, detail

    def _on_connect(self, client, userdata, flags, rc, properties=None) -> None:
        if rc == 0:
            self._connected = True
            logger.info("Connected to MQTT broker")
            client.subscribe(self.command_filter, qos=self.mqtt_config.qos)
            logger.info(f"Subscribed to command topic: {self.command_filter}")
        else:
            logger.error(f"Connection failed with code {rc}")

    def _on_disconnect(self, client, userdata, flags, rc, properties=None) -> None:
        self._connected = False
        if rc != 0:
            logger.warning(f"Unexpected disconnection (rc={rc})")

    def _on_message(self, client, userdata, msg) -> None:
        try:
            self.handle_command(msg.topic, msg.payload)
        except Exception as e:
            logger.error(f"Error processing command message: {e}")
