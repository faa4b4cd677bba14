"""
Raw Wi-Fi Scan Message Schema.

Defines what the platform scan producer hands to the positioning core:
one RawScanSample per (BSSID, RSS) entry, grouped into a ScanBatch per scan.
"""

from dataclasses import dataclass, field
from typing import List, Optional
import math
import time


@dataclass
class RawScanSample:
    """
    One access point entry from a Wi-Fi scan.

    Attributes:
        anchor_label: BSSID as reported by the platform. The last character
            distinguishes virtual SSIDs that share one physical AP.
        rss: Received signal strength in dBm (negative)

    Notes:
        - The label is kept verbatim here; the scan reducer strips it.
    """

    anchor_label: str
    rss: float

    def __post_init__(self):
        """Validate sample after initialization."""
        if not isinstance(self.anchor_label, str):
            raise ValueError(f"Anchor label must be a string: {self.anchor_label!r}")

        if not math.isfinite(self.rss):
            raise ValueError(f"RSS must be finite: {self.rss}")

    @property
    def stripped_label(self) -> str:
        """Label with the trailing virtual-SSID character removed."""
        return self.anchor_label[:-1] if self.anchor_label else self.anchor_label

    @classmethod
    def from_dict(cls, data: dict) -> "RawScanSample":
        """Build a sample from a {'label'|'bssid', 'rss'|'level'} mapping."""
        label = data.get('label', data.get('bssid'))
        rss = data.get('rss', data.get('level'))
        if label is None or rss is None:
            raise ValueError(f"Scan entry needs a label and an rss: {data}")
        return cls(anchor_label=str(label), rss=float(rss))


@dataclass
class ScanBatch:
    """
    All samples from one platform scan (one pipeline tick).

    Attributes:
        samples: Raw scan samples, in the order the platform reported them
        t_scan: Time the scan results were delivered (seconds)
        sequence: Monotonic scan counter assigned by the producer
    """

    samples: List[RawScanSample]
    t_scan: float = field(default_factory=time.time)
    sequence: Optional[int] = None

    def __len__(self) -> int:
        return len(self.samples)

    @classmethod
    def from_dict(cls, data: dict) -> "ScanBatch":
        """
        Build a batch from a decoded JSON scan record.

        Accepts {"t_scan": ..., "sequence": ..., "samples": [...]} or a bare
        list of sample mappings.
        """
        if isinstance(data, list):
            return cls(samples=[RawScanSample.from_dict(d) for d in data])

        samples = [RawScanSample.from_dict(d) for d in data.get('samples', [])]
        kwargs = {}
        if 't_scan' in data:
            kwargs['t_scan'] = float(data['t_scan'])
        if 'sequence' in data:
            kwargs['sequence'] = int(data['sequence'])
        return cls(samples=samples, **kwargs)
