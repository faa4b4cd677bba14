"""
Calibration Store.

Holds, per anchor id, one structured PathLossModel record (all four
coefficients together) and the labelled (rss, distance) measurements collected
during the calibration walk. Read-only while a tracking session runs.
"""

import logging
import threading
from collections import defaultdict
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from ipt_core.calibration.path_loss import PathLossModel

logger = logging.getLogger(__name__)


class CalibrationStore(Protocol):
    """Interface the positioning core needs from calibration persistence."""

    def get(self, anchor_id: int) -> Optional[PathLossModel]:
        ...

    def put(self, anchor_id: int, coefficients: Sequence[float]) -> PathLossModel:
        ...

    def put_model(self, model: PathLossModel) -> None:
        ...

    def measurements(self, anchor_id: int) -> List[Tuple[float, float]]:
        ...


class InMemoryCalibrationStore:
    """
    Dictionary-backed calibration store.

    Usage:
        store = InMemoryCalibrationStore()
        store.add_measurement(3, rss=-52, distance=2.0)
        ...
        fit_path_loss(3, store=store)        # fitted model stored for anchor 3
        store.put(3, [0.5, -0.1, 0.0, 0.0])  # manual override replaces it
    """

    def __init__(self, models: Optional[Dict[int, PathLossModel]] = None):
        self._lock = threading.Lock()
        self._models: Dict[int, PathLossModel] = dict(models or {})
        self._measurements: Dict[int, List[Tuple[float, float]]] = defaultdict(list)

    def get(self, anchor_id: int) -> Optional[PathLossModel]:
        """Path-loss model of anchor_id, or None if unfit."""
        with self._lock:
            return self._models.get(anchor_id)

    def put(self, anchor_id: int, coefficients: Sequence[float]) -> PathLossModel:
        """
        Store user-supplied coefficients for anchor_id.

        Replaces any fitted model for that anchor.
        """
        model = PathLossModel(
            anchor_id=anchor_id,
            coefficients=tuple(coefficients),
            source="manual",
        )
        self.put_model(model)
        logger.info("Manual path-loss coefficients set for anchor %d: %s",
                    anchor_id, model.coefficients)
        return model

    def put_model(self, model: PathLossModel) -> None:
        """Store a complete model record, replacing the previous one."""
        with self._lock:
            self._models[model.anchor_id] = model

    def add_measurement(self, anchor_id: int, rss: float, distance: float) -> None:
        """Record one labelled calibration measurement."""
        if distance < 0:
            raise ValueError(f"Distance cannot be negative: {distance}")
        with self._lock:
            self._measurements[anchor_id].append((float(rss), float(distance)))

    def measurements(self, anchor_id: int) -> List[Tuple[float, float]]:
        """Copy of the recorded (rss, distance) pairs for anchor_id."""
        with self._lock:
            return list(self._measurements.get(anchor_id, []))

    def clear_measurements(self, anchor_id: int) -> None:
        with self._lock:
            self._measurements.pop(anchor_id, None)

    def fitted_anchor_ids(self) -> List[int]:
        with self._lock:
            return sorted(self._models)

    def to_dict(self) -> dict:
        """Models keyed by anchor id (string keys, JSON friendly)."""
        with self._lock:
            return {str(aid): m.to_dict() for aid, m in sorted(self._models.items())}

    @classmethod
    def from_dict(cls, data: dict) -> "InMemoryCalibrationStore":
        """
        Build a store from a mapping of anchor id to model record.

        A record is either a full model dict or a bare list of coefficients.
        """
        models = {}
        for key, record in data.items():
            anchor_id = int(key)
            if isinstance(record, dict):
                record = dict(record)
                record_id = int(record.setdefault('anchor_id', anchor_id))
                if record_id != anchor_id:
                    raise ValueError(
                        f"Model for anchor {record_id} stored under key {key!r}"
                    )
                models[anchor_id] = PathLossModel.from_dict(record)
            else:
                models[anchor_id] = PathLossModel(
                    anchor_id=anchor_id, coefficients=tuple(record), source="manual"
                )
        return cls(models)
