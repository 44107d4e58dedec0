"""Command maps, intervals and timeouts."""

from typing import Dict

# Logical (camelCase) command names -> atvscript command names.
ATVSCRIPT_COMMAND_MAP: Dict[str, str] = {
    "up": "up",
    "down": "down",
    "left": "left",
    "right": "right",
    "select": "select",
    "menu": "menu",
    "home": "home",
    "homeHold": "home_hold",
    "topMenu": "top_menu",
    "play": "play",
    "pause": "pause",
    "playPause": "play_pause",
    "stop": "stop",
    "next": "next",
    "previous": "previous",
    "skipForward": "skip_forward",
    "skipBackward": "skip_backward",
    "volumeUp": "volume_up",
    "volumeDown": "volume_down",
    "channelUp": "channel_up",
    "channelDown": "channel_down",
}

# Logical command names -> pyatv RemoteControl methods of the native backend.
NATIVE_COMMAND_MAP: Dict[str, str] = {
    "up": "up",
    "down": "down",
    "left": "left",
    "right": "right",
    "select": "select",
    "menu": "menu",
    "home": "home",
    "homeHold": "home_hold",
    "play": "play",
    "pause": "pause",
    "next": "next",
    "previous": "previous",
}

DEFAULT_POLLING_INTERVAL = 10.0  # seconds
DEFAULT_ARTWORK_INTERVAL = 30.0  # seconds
RECONNECT_BASE_DELAY = 5.0  # seconds
RECONNECT_MAX_DELAY = 300.0  # seconds
MAX_RECONNECT_ATTEMPTS = 10

ATVSCRIPT_TIMEOUT = 15.0  # seconds
ATVSCRIPT_SCAN_TIMEOUT = 30.0  # seconds
ATVSCRIPT_MAX_OUTPUT = 1024 * 1024  # bytes

PAIR_PROMPT_TIMEOUT = 30.0  # seconds
PAIR_VERIFY_TIMEOUT = 30.0  # seconds
PUSH_STOP_GRACE = 2.0  # seconds

PIN_PROMPT_MARKERS = ("Enter PIN", "pin:")
ERROR_EXCERPT_LEN = 300
RAW_EXCERPT_LEN = 200

ARTWORK_DEFAULT_WIDTH = 300
ARTWORK_DEFAULT_HEIGHT = -1

MQTT_TOPIC_PREFIX = "atv"
