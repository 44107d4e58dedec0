"""Tests for the MQTT surface, with the paho client mocked out."""

import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from atv_bridge.config import MqttConfig
from atv_bridge.event_bus import EventBus
from atv_bridge.mqtt_controller import MqttController, MqttStateSink, encode_payload


@pytest.fixture
def client(monkeypatch):
    mock_client = MagicMock()
    monkeypatch.setattr(
        "atv_bridge.mqtt_controller.mqtt.Client", MagicMock(return_value=mock_client)
    )
    return mock_client


@pytest.fixture
def loop():
    mock_loop = MagicMock()
    mock_loop.call_soon_threadsafe.side_effect = lambda func, *args: func(*args)
    return mock_loop


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def controller(client, loop, event_bus) -> MqttController:
    config = MqttConfig(enabled=True, host="broker", username="user", password="pw")
    return MqttController(loop, event_bus, config, "Living Room")


def _published(client):
    return {c.args[0]: c.args[1] for c in client.publish.call_args_list}


def test_encode_payload() -> None:
    assert encode_payload("Song") == "Song"
    assert encode_payload(True) == "true"
    assert encode_payload(12.5) == "12.5"
    assert encode_payload(None) == "null"


def test_client_setup(controller, client) -> None:
    client.will_set.assert_called_once_with("atv/availability", "offline", retain=True)

    controller.start()

    client.username_pw_set.assert_called_once_with("user", "pw")
    client.connect.assert_called_once_with("broker", 1883, 60)
    client.loop_start.assert_called_once()


def test_start_failure_is_logged(controller, client, caplog) -> None:
    client.connect.side_effect = OSError("refused")
    controller.start()
    assert "Failed to connect to MQTT broker" in caplog.text
    client.loop_start.assert_not_called()


@pytest.mark.parametrize(
    "topic, payload, expected",
    [
        ("atv/dev1/remote/menu/set", "true", ("remote_command", {"device_id": "dev1", "command": "menu"})),
        ("atv/dev1/remote/menu/set", "1", ("remote_command", {"device_id": "dev1", "command": "menu"})),
        ("atv/dev1/remote/menu/set", "false", None),
        ("atv/dev1/remote/menu/set", "", None),
        ("atv/dev1/power/state/set", "ON", ("power_command", {"device_id": "dev1", "state": True})),
        ("atv/dev1/power/state/set", "off", ("power_command", {"device_id": "dev1", "state": False})),
        ("atv/dev1/playing/position/set", "93.5", ("seek_command", {"device_id": "dev1", "position": 93.5})),
        ("atv/dev1/playing/position/set", "soon", None),
        ("atv/dev1/apps/launch/set", "com.netflix.Netflix", ("app_launch_command", {"device_id": "dev1", "app_id": "com.netflix.Netflix"})),
        ("atv/dev1/playing/title/set", "x", None),
        ("atv/dev1/power/state", "true", None),
        ("other/dev1/remote/menu/set", "true", None),
        ("atv/pair/start", '{"identifier": "dev1", "protocol": "companion"}', ("pair_start", {"identifier": "dev1", "protocol": "companion"})),
        ("atv/pair/pin", '{"identifier": "dev1", "pin": "1234"}', ("pair_submit_pin", {"identifier": "dev1", "pin": "1234"})),
        ("atv/pair/abort", "", ("pair_abort", {})),
        ("atv/pair/start", "not json", None),
        ("atv/pair/start", "[1, 2]", None),
        ("atv/pair/result", "{}", None),
    ],
)
def test_parse_command(controller, topic, payload, expected) -> None:
    assert controller.parse_command(topic, payload) == expected


def test_message_is_published_on_the_loop(controller, loop, event_bus) -> None:
    received = []
    event_bus.subscribe("remote_command", received.append)

    message = SimpleNamespace(topic="atv/dev1/remote/select/set", payload=b"true")
    controller._on_message(None, None, message)

    loop.call_soon_threadsafe.assert_called_once()
    assert received[0]["command"] == "select"
    assert received[0]["__topic"] == "remote_command"


def test_ignored_message_does_not_touch_the_loop(controller, loop) -> None:
    message = SimpleNamespace(topic="atv/dev1/remote/select/set", payload=b"0")
    controller._on_message(None, None, message)
    loop.call_soon_threadsafe.assert_not_called()


def test_on_connect_subscribes_and_republishes(controller, client) -> None:
    sink = MqttStateSink(controller)
    sink.create_device_tree("dev1", "Living Room")
    client.publish.reset_mock()

    controller._on_connect(client, None, {}, SimpleNamespace(is_failure=False), None)

    subscribed = [c.args[0] for c in client.subscribe.call_args_list]
    assert subscribed == controller.command_topics
    published = _published(client)
    assert published["atv/availability"] == "online"
    assert published["atv/dev1/info/name"] == "Living Room"
    assert published["atv/dev1/power/state"] == "false"


def test_on_connect_failure(controller, client, caplog) -> None:
    controller._on_connect(client, None, {}, SimpleNamespace(is_failure=True), None)
    client.subscribe.assert_not_called()
    assert "Failed to connect to MQTT" in caplog.text


def test_state_sink_publishes_retained(controller, client) -> None:
    sink = MqttStateSink(controller)
    assert controller.state_store is sink

    sink.set_state("dev1.power.state", True)
    sink.set_state("dev1.playing.title", "Song")

    client.publish.assert_any_call("atv/dev1/power/state", "true", retain=True)
    client.publish.assert_any_call("atv/dev1/playing/title", "Song", retain=True)
    assert sink.get_state("dev1.power.state").val is True


def test_pair_result_is_published(controller, client, event_bus) -> None:
    event_bus.publish("pair_result", {"identifier": "dev1", "status": "paired"})

    topic, payload = client.publish.call_args.args
    assert topic == "atv/pair/result"
    assert json.loads(payload) == {"identifier": "dev1", "status": "paired"}


def test_stop_marks_offline(controller, client, event_bus) -> None:
    controller.stop()
    event_bus.publish("pair_result", {"identifier": "dev1", "status": "aborted"})

    client.publish.assert_called_with("atv/availability", "offline", retain=True)
    client.loop_stop.assert_called_once()
    client.disconnect.assert_called_once()
