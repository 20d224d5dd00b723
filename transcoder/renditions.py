"""
Quality presets for the HLS rendition ladder
"""

import re
from dataclasses import dataclass

_BITRATE_RE = re.compile(r'^(\d+)([kKmM]?)$')
_RESOLUTION_RE = re.compile(r'^(\d+)x(\d+)$')


def parse_bitrate(value):
    """
    Convert an ffmpeg style bitrate ('500k', '2M', '800000') to bits per second.
    """
    match = _BITRATE_RE.match(str(value).strip())
    if not match:
        raise ValueError(f"Invalid bitrate: {value!r}")
    number, unit = int(match.group(1)), match.group(2).lower()
    if unit == 'k':
        return number * 1000
    if unit == 'm':
        return number * 1000 * 1000
    return number


@dataclass(frozen=True)
class Rendition:
    name: str
    resolution: str
    bitrate: str

    def __post_init__(self):
        if not self.name or '/' in self.name:
            raise ValueError(f"Invalid rendition name: {self.name!r}")
        if not _RESOLUTION_RE.match(self.resolution):
            raise ValueError(f"Invalid resolution for {self.name}: {self.resolution!r}")
        parse_bitrate(self.bitrate)

    @property
    def width(self) -> int:
        return int(self.resolution.split('x')[0])

    @property
    def height(self) -> int:
        return int(self.resolution.split('x')[1])

    @property
    def bandwidth(self) -> int:
        return parse_bitrate(self.bitrate)

    @property
    def bufsize(self) -> str:
        # ffmpeg buffer size: twice the target bitrate
        return f"{self.bandwidth * 2 // 1000}k"


QUALITY_PRESETS = {
    '1080p': Rendition('1080p', '1920x1080', '5000k'),
    '720p': Rendition('720p', '1280x720', '2000k'),
    '480p': Rendition('480p', '854x480', '1000k'),
    '360p': Rendition('360p', '640x360', '500k'),
    '240p': Rendition('240p', '426x240', '250k'),
}

DEFAULT_LADDER = ('360p', '720p')


def resolve_ladder(names=None):
    """
    Map preset names to Rendition objects, keeping the caller's order.

    Duplicates are dropped. Unknown names or an empty ladder raise ValueError.
    """
    if names is None:
        names = DEFAULT_LADDER
    if isinstance(names, str):
        names = [n.strip() for n in names.split(',') if n.strip()]

    ladder = []
    seen = set()
    for name in names:
        if isinstance(name, Rendition):
            rendition = name
        else:
            rendition = QUALITY_PRESETS.get(name)
            if rendition is None:
                raise ValueError(
                    f"Unknown quality preset {name!r}. Allowed: {sorted(QUALITY_PRESETS)}"
                )
        if rendition.name in seen:
            continue
        seen.add(rendition.name)
        ladder.append(rendition)

    if not ladder:
        raise ValueError("At least one rendition is required")
    return tuple(ladder)
