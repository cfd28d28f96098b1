"""
Session description rewriting for offers sent by the host.
"""

import re
from typing import Dict, List, Set


def _split(sdp: str) -> List[str]:
    return [line.rstrip("\r") for line in sdp.split("\n") if line.strip()]


def _join(lines: List[str]) -> str:
    return "\r\n".join(lines) + "\r\n"


def set_bandwidth(sdp: str, bitrate_kbps: int, media: str = "video") -> str:
    """
    Cap the bandwidth of every section of the given media type.

    Existing b=AS lines in those sections are replaced by one
    "b=AS:<kbps>" placed after the section's c= line.
    """
    out: List[str] = []
    in_section = False
    inserted = False

    for line in _split(sdp):
        if line.startswith("m="):
            if in_section and not inserted:
                out.append(f"b=AS:{bitrate_kbps}")
            in_section = line.startswith(f"m={media}")
            inserted = False
            out.append(line)
            continue

        if in_section:
            if line.startswith("b=AS:"):
                continue
            if not inserted and not line.startswith(("i=", "c=")):
                out.append(f"b=AS:{bitrate_kbps}")
                inserted = True

        out.append(line)

    if in_section and not inserted:
        out.append(f"b=AS:{bitrate_kbps}")

    return _join(out)


def prefer_codec(sdp: str, codec: str, media: str = "video") -> str:
    """
    Move payload types of the named codec (and their RTX companions) to
    the front of every matching m= line.
    """
    lines = _split(sdp)
    codec = codec.lower()

    rtpmap: Dict[str, str] = {}
    apt: Dict[str, str] = {}
    for line in lines:
        m = re.match(r"a=rtpmap:(\d+) ([^/]+)/", line)
        if m:
            rtpmap[m.group(1)] = m.group(2).lower()
        m = re.match(r"a=fmtp:(\d+) .*\bapt=(\d+)", line)
        if m:
            apt[m.group(1)] = m.group(2)

    out = []
    for line in lines:
        if line.startswith(f"m={media} "):
            parts = line.split(" ")
            header, payloads = parts[:3], parts[3:]
            preferred: Set[str] = {pt for pt in payloads if rtpmap.get(pt) == codec}
            if preferred:
                rtx = {pt for pt in payloads if apt.get(pt) in preferred}
                first = [pt for pt in payloads if pt in preferred or pt in rtx]
                rest = [pt for pt in payloads if pt not in first]
                line = " ".join(header + first + rest)
        out.append(line)

    return _join(out)
