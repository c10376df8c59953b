"""Enumerate ALSA capture devices for the preflight audio check."""

from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass
from typing import Iterable, List, Sequence


_DEVICE_LINE = re.compile(
    r"card\s+(?P<card_index>\d+):\s*"
    r"(?P<card_name>[^\[]+)\[(?P<card_id>[^\]]+)\],\s*"
    r"device\s+(?P<device_index>\d+):\s*"
    r"(?P<device_name>[^\[]+)\[(?P<device_id>[^\]]+)\]",
    re.IGNORECASE,
)

_PLUGIN_PREFIX = re.compile(r"^(?:plug)?hw:", re.IGNORECASE)


@dataclass(frozen=True)
class CaptureDevice:
    identifier: str
    label: str
    card_index: int
    device_index: int
    card_id: str
    device_id: str


def _run_listing(command: Iterable[str]) -> str:
    try:
        result = subprocess.run(
            list(command),
            check=False,
            capture_output=True,
            text=True,
            timeout=2.0,
        )
    except FileNotFoundError:
        return ""
    except subprocess.SubprocessError:
        return ""

    output = (result.stdout or "").strip()
    if not output:
        output = (result.stderr or "").strip()
    return output


def _parse_listing(output: str) -> List[CaptureDevice]:
    devices: List[CaptureDevice] = []
    if not output:
        return devices

    for line in output.splitlines():
        match = _DEVICE_LINE.search(line)
        if not match:
            continue
        card_index = int(match.group("card_index"))
        device_index = int(match.group("device_index"))
        card_id = match.group("card_id").strip()
        device_id = match.group("device_id").strip()
        identifier = f"hw:CARD={card_id},DEV={device_index}"

        card_name = match.group("card_name").strip() or card_id
        device_name = match.group("device_name").strip() or device_id
        label = (
            f"{card_name} ({card_id}), device {device_index}: {device_name} ({device_id})"
        )
        devices.append(
            CaptureDevice(
                identifier=identifier,
                label=label,
                card_index=card_index,
                device_index=device_index,
                card_id=card_id,
                device_id=device_id,
            )
        )
    return devices


def discover_capture_devices() -> List[CaptureDevice]:
    """Return ALSA capture devices parsed from `arecord -l` or `aplay -l`."""

    seen_ids: set[str] = set()
    discovered: List[CaptureDevice] = []
    for command in ("arecord -l", "aplay -l"):
        output = _run_listing(command.split())
        if not output:
            continue
        for device in _parse_listing(output):
            if device.identifier in seen_ids:
                continue
            seen_ids.add(device.identifier)
            discovered.append(device)
    discovered.sort(key=lambda d: (d.card_index, d.device_index))
    return discovered


def parse_identifier(identifier: str) -> tuple[str, int] | None:
    """Split ``hw:1,0`` / ``plughw:CARD=Device,DEV=0`` into (card, device).

    Returns ``None`` for identifiers that do not name a hardware card.
    """

    text = identifier.strip()
    if not _PLUGIN_PREFIX.match(text):
        return None
    body = _PLUGIN_PREFIX.sub("", text)
    card: str | None = None
    device = 0
    for position, part in enumerate(p.strip() for p in body.split(",")):
        if not part:
            continue
        key, sep, value = part.partition("=")
        if sep:
            key = key.strip().upper()
            if key == "CARD":
                card = value.strip()
            elif key == "DEV":
                try:
                    device = int(value)
                except ValueError:
                    return None
            continue
        if position == 0:
            card = part
        elif position == 1:
            try:
                device = int(part)
            except ValueError:
                return None
    if not card:
        return None
    return card, device


def device_present(identifier: str, devices: Sequence[CaptureDevice]) -> bool:
    parsed = parse_identifier(identifier)
    if parsed is None:
        return any(d.identifier == identifier.strip() for d in devices)
    card, device_index = parsed
    for candidate in devices:
        if candidate.device_index != device_index:
            continue
        if card.isdigit() and candidate.card_index == int(card):
            return True
        if candidate.card_id.lower() == card.lower():
            return True
    return False


__all__ = ["CaptureDevice", "device_present", "discover_capture_devices", "parse_identifier"]
