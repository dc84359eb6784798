"""
Boot command typing through ``PutUsbScanCodes``.

A boot command is plain text with special keys in angle brackets, e.g.
``"linux ks=cdrom:/ks.cfg<enter><wait5>"``. Modifiers can be held with
``<leftCtrlOn>`` ... ``<leftCtrlOff>``.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Union

from pyVmomi import vim

from vsphere_builder.config import parse_duration
from vsphere_builder.errors import DriverError

logger = logging.getLogger(__name__)

# USB HID usage IDs (keyboard page)
SPECIAL_KEYS: Dict[str, int] = {
    "enter": 0x28,
    "return": 0x28,
    "esc": 0x29,
    "bs": 0x2A,
    "tab": 0x2B,
    "spacebar": 0x2C,
    "insert": 0x49,
    "home": 0x4A,
    "pageup": 0x4B,
    "del": 0x4C,
    "end": 0x4D,
    "pagedown": 0x4E,
    "right": 0x4F,
    "left": 0x50,
    "down": 0x51,
    "up": 0x52,
}
SPECIAL_KEYS.update({f"f{n}": 0x3A + n - 1 for n in range(1, 13)})

MODIFIER_KEYS: Dict[str, int] = {
    "leftctrl": 0xE0,
    "leftshift": 0xE1,
    "leftalt": 0xE2,
    "leftsuper": 0xE3,
    "rightctrl": 0xE4,
    "rightshift": 0xE5,
    "rightalt": 0xE6,
    "rightsuper": 0xE7,
}

_PLAIN = {c: 0x04 + i for i, c in enumerate("abcdefghijklmnopqrstuvwxyz")}
_PLAIN.update({c: 0x1E + i for i, c in enumerate("1234567890")})
_PLAIN.update({" ": 0x2C, "-": 0x2D, "=": 0x2E, "[": 0x2F, "]": 0x30, "\\": 0x31,
               ";": 0x33, "'": 0x34, "`": 0x35, ",": 0x36, ".": 0x37, "/": 0x38,
               "\n": 0x28, "\t": 0x2B})
_SHIFTED = {c.upper(): code for c, code in _PLAIN.items() if c.isalpha()}
_SHIFTED.update(dict(zip("!@#$%^&*()", [_PLAIN[d] for d in "1234567890"])))
_SHIFTED.update({"_": 0x2D, "+": 0x2E, "{": 0x2F, "}": 0x30, "|": 0x31,
                 ":": 0x33, '"': 0x34, "~": 0x35, "<": 0x36, ">": 0x37, "?": 0x38})

_TOKEN = re.compile(r"<([A-Za-z0-9]+)>")
_WAIT = re.compile(r"wait(\d+(?:ms|s|m|h)?(?:\d+(?:ms|s|m|h))*)?$", re.IGNORECASE)


@dataclass(frozen=True)
class KeyPress:
    code: int
    shift: bool = False


@dataclass(frozen=True)
class KeyHold:
    modifier: str
    down: bool


@dataclass(frozen=True)
class Wait:
    seconds: float


Action = Union[KeyPress, KeyHold, Wait]


def _special(token: str) -> Action:
    lower = token.lower()
    wait = _WAIT.match(token)
    if wait:
        amount = wait.group(1)
        if amount is None:
            return Wait(1.0)
        return Wait(parse_duration(amount))
    for suffix, down in (("on", True), ("off", False)):
        if lower.endswith(suffix) and lower[: -len(suffix)] in MODIFIER_KEYS:
            return KeyHold(lower[: -len(suffix)], down)
    if lower in MODIFIER_KEYS:
        return KeyPress(MODIFIER_KEYS[lower])
    if lower in SPECIAL_KEYS:
        return KeyPress(SPECIAL_KEYS[lower])
    raise DriverError(f"unknown boot command key <{token}>")


def parse_boot_command(command: str) -> List[Action]:
    """Turn a boot command string into key actions."""
    actions: List[Action] = []
    pos = 0
    for match in _TOKEN.finditer(command):
        actions += _characters(command[pos:match.start()])
        try:
            actions.append(_special(match.group(1)))
        except DriverError:
            # Not a known key name: type it literally
            actions += _characters(match.group(0))
        pos = match.end()
    actions += _characters(command[pos:])
    return actions


def _characters(text: str) -> List[Action]:
    actions: List[Action] = []
    for char in text:
        if char in _PLAIN:
            actions.append(KeyPress(_PLAIN[char]))
        elif char in _SHIFTED:
            actions.append(KeyPress(_SHIFTED[char], shift=True))
        else:
            raise DriverError(f"cannot type character {char!r} in boot command")
    return actions


def key_event(code: int, ctrl: bool = False, alt: bool = False, shift: bool = False) -> Any:
    return vim.UsbScanCodeSpec.KeyEvent(
        usbHidCode=(code << 16) | 7,
        modifiers=vim.UsbScanCodeSpec.ModifierType(leftControl=ctrl, leftAlt=alt, leftShift=shift),
    )


def type_boot_command(vm: Any, actions: List[Action], ctx: Any, key_interval: float) -> bool:
    """Send ``actions`` to the VM console.

    Returns False if the run was cancelled part way.
    """
    held = {"leftctrl": False, "leftalt": False, "leftshift": False}
    for action in actions:
        if isinstance(action, Wait):
            logger.debug(f"Boot command waiting {action.seconds:g}s")
            if ctx.wait(action.seconds):
                return False
            continue
        if isinstance(action, KeyHold):
            held[action.modifier] = action.down
            continue
        event = key_event(
            action.code,
            ctrl=held["leftctrl"],
            alt=held["leftalt"],
            shift=action.shift or held["leftshift"],
        )
        vm.type_on_keyboard([event])
        if ctx.wait(key_interval):
            return False
    return True
