"""Subscriptions to update announcements published over MQTT."""

from __future__ import annotations

import enum
import json
import logging
import re
import time
from datetime import datetime, timezone
from urllib.parse import quote_plus, unquote, unquote_plus, urlsplit

import paho.mqtt.client as paho

from .appimage import (
    AppImage,
    find_most_recent_appimage_with_matching_update_information,
    validate_update_information,
)
from .appwrapper import _send_notification
from .config import applications_dir

log = logging.getLogger(__name__)

DEFAULT_PORT = 1883
UPDATE_NOTIFICATION_TIMEOUT_MS = 120000

_FRACTION = re.compile(r"(T\d{2}:\d{2}:\d{2})\.\d+")


class MessageOutcome(enum.Enum):
    """What handling an incoming message led to."""

    IGNORED = "ignored"
    UNCHANGED = "unchanged"
    UPDATE_AVAILABLE = "update-available"


def _parse_fstime(value) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    text = _FRACTION.sub(r"\1", value.strip())
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        moment = datetime.fromisoformat(text)
    except ValueError:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


class UpdateSubscriber:
    """Subscribes to update announcements and tells the user about updates.

    ``subscribe_delay`` (seconds to wait before subscribing, so that retained
    messages do not arrive before the AppImage is integrated),
    ``applications_directory`` and ``notifier`` (called with summary, body
    and timeout in milliseconds) may be changed after construction.
    """

    subscribe_delay = 10.0

    def __init__(self, client, namespace: str, own_update_information: str = ""):
        self.client = client
        self.namespace = namespace
        self.own_update_information = own_update_information
        self.subscribed: list[str] = []
        self.applications_directory = applications_dir()
        self.notifier = _send_notification

    def subscribe(self, updateinformation: str) -> str | None:
        """Subscribe to announcements for ``updateinformation``; return the topic.

        Returns None if already subscribed or nothing can be subscribed to.
        """
        if updateinformation in self.subscribed:
            return None
        self.subscribed.append(updateinformation)
        if self.subscribe_delay > 0:
            time.sleep(self.subscribe_delay)
        escaped = quote_plus(updateinformation)
        if not escaped:
            return None
        topic = f"{self.namespace}/{escaped}/#"
        log.info("Subscribing to updates for %s", updateinformation)
        log.debug("mqtt: Waiting for messages on topic %s/%s/version", self.namespace, escaped)

        def on_message(_client, _userdata, message) -> None:
            try:
                self.handle_message(message.topic, message.payload)
            except Exception:  # keep the network loop alive
                log.exception("mqtt: failed to handle message on %s", message.topic)

        self.client.message_callback_add(topic, on_message)
        self.client.subscribe(topic, 0)
        return topic

    def unsubscribe(self, updateinformation: str) -> None:
        """Stop receiving announcements for ``updateinformation``."""
        escaped = quote_plus(updateinformation)
        if not escaped:
            return
        self.client.unsubscribe(escaped)

    def handle_message(self, topic: str, payload) -> MessageOutcome:
        """Act on one message received on ``topic``."""
        short = topic.replace(self.namespace + "/", "")
        parts = short.split("/")
        log.info("mqtt: received: %s", parts)
        if len(parts) < 2 or parts[1] != "version":
            return MessageOutcome.IGNORED

        try:
            decoded = json.loads(payload)
        except (ValueError, TypeError) as err:
            log.error("mqtt unmarshal: %s", err)
            decoded = {}
        data = {str(key).lower(): value for key, value in decoded.items()} if isinstance(decoded, dict) else {}
        version = data.get("version")
        if not isinstance(version, str) or not version:
            return MessageOutcome.IGNORED

        escaped = parts[0]
        log.info("mqtt: %s reports version %s", escaped, version)
        unescaped = unquote_plus(escaped)
        if self.own_update_information and unescaped == self.own_update_information:
            log.info("Update available for this AppImage daemon")
            self.notifier(
                "Update available",
                "An update for the AppImage daemon is available; I could update myself now...",
                0,
            )

        most_recent = find_most_recent_appimage_with_matching_update_information(
            unescaped, self.applications_directory
        )
        if most_recent is None:
            log.info("mqtt: no integrated AppImage for %s", unescaped)
            return MessageOutcome.IGNORED

        ai = AppImage.from_path(most_recent)
        mtime = ai.mtime
        local = int(mtime) if mtime is not None else None
        fstime = _parse_fstime(data.get("fstime"))
        remote = int(fstime.timestamp()) if fstime is not None else None
        log.info(
            "mqtt: %s reports version %s with FSTime %s - we have %s with FSTime %s",
            unescaped, version, remote, most_recent, local,
        )

        if local is not None and local == remote:
            log.info("mqtt: Not taking action on %s because FStime is identical", ai.name)
            return MessageOutcome.UNCHANGED

        try:
            validate_update_information(unescaped)
        except ValueError as err:
            log.error("mqtt: update information: %s", err)
            return MessageOutcome.IGNORED
        self.notifier(
            "Update available",
            f"{ai.name} can be updated to version {version}. \nchangelog",
            UPDATE_NOTIFICATION_TIMEOUT_MS,
        )
        return MessageOutcome.UPDATE_AVAILABLE


def _new_client(client_id: str):
    api = getattr(paho, "CallbackAPIVersion", None)
    if api is not None:
        return paho.Client(api.VERSION2, client_id=client_id)
    return paho.Client(client_id=client_id)


def connect(client_id: str, uri: str):
    """Create an MQTT client for the broker at ``uri`` and try to connect it.

    Connection failures are logged, not raised, because they are common on
    bad networks; raises ValueError if ``uri`` names no host.
    """
    parts = urlsplit(uri)
    if not parts.hostname:
        raise ValueError(f"no broker host in {uri!r}")
    port = parts.port or DEFAULT_PORT
    client = _new_client(client_id)
    if parts.username is not None:
        secret = unquote(parts.password) if parts.password is not None else None
        client.username_pw_set(unquote(parts.username), secret)
    try:
        client.connect(parts.hostname, port)
    except OSError as err:
        log.error("MQTT: %s", err)
        return client
    client.loop_start()
    return client