"""
Anchor registry.

Known access points with their floor-plan positions. Labels are stored in
stripped form (BSSID without the trailing virtual-SSID character).
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Protocol, Tuple


@dataclass(frozen=True)
class Anchor:
    """
    A fixed Wi-Fi access point with known position.

    Attributes:
        anchor_id: Integer identifier (calibration store key)
        label: Stripped BSSID (opaque string)
        position: (x, y) in floor-plan units, x to the right, y downward
    """

    anchor_id: int
    label: str
    position: Tuple[float, float]

    def __post_init__(self):
        if len(self.position) != 2:
            raise ValueError(f"Anchor position must be (x, y): {self.position}")
        object.__setattr__(
            self, 'position', (float(self.position[0]), float(self.position[1]))
        )

    def to_dict(self) -> dict:
        return {
            'anchor_id': self.anchor_id,
            'label': self.label,
            'x': self.position[0],
            'y': self.position[1],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Anchor":
        if 'position' in data:
            position = tuple(data['position'])
        else:
            position = (data['x'], data['y'])
        return cls(
            anchor_id=int(data['anchor_id']),
            label=str(data['label']),
            position=position,
        )


class AnchorRegistry(Protocol):
    """Interface the positioning core needs from the anchor database."""

    def lookup(self, label: str) -> Optional[Anchor]:
        ...

    def all(self) -> List[Anchor]:
        ...


class InMemoryAnchorRegistry:
    """
    Registry of known anchors indexed by stripped label and by id.

    Usage:
        registry = InMemoryAnchorRegistry([
            Anchor(1, "00:11:22:33:44:5", (0.0, 0.0)),
            Anchor(2, "00:11:22:33:66:7", (10.0, 0.0)),
        ])
        anchor = registry.lookup("00:11:22:33:44:5")
    """

    def __init__(self, anchors: Iterable[Anchor] = ()):
        self._by_label: Dict[str, Anchor] = {}
        self._by_id: Dict[int, Anchor] = {}
        for anchor in anchors:
            self.add(anchor)

    def add(self, anchor: Anchor) -> None:
        """Register an anchor; labels and ids must be unique."""
        if anchor.label in self._by_label:
            raise ValueError(f"Duplicate anchor label: {anchor.label}")
        if anchor.anchor_id in self._by_id:
            raise ValueError(f"Duplicate anchor id: {anchor.anchor_id}")
        self._by_label[anchor.label] = anchor
        self._by_id[anchor.anchor_id] = anchor

    def lookup(self, label: str) -> Optional[Anchor]:
        """Anchor registered under the stripped label, or None."""
        return self._by_label.get(label)

    def get(self, anchor_id: int) -> Optional[Anchor]:
        return self._by_id.get(anchor_id)

    def all(self) -> List[Anchor]:
        """All anchors, in registration order."""
        return list(self._by_label.values())

    def __len__(self) -> int:
        return len(self._by_label)

    @classmethod
    def from_records(cls, records: Iterable[dict]) -> "InMemoryAnchorRegistry":
        """Build a registry from decoded JSON anchor records."""
        return cls(Anchor.from_dict(r) for r in records)
