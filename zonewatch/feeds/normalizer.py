"""
ZoneWatch Incident Feed Normalizer

Projects raw source documents into canonical `Incident` objects.

Malformed geometry is expected noise in citizen reports (no GPS fix, manual
entry typos, serialization glitches), so records that fail validation are
dropped quietly rather than raised. Everything else gets a documented default.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, List, Mapping, Optional

from pydantic import ValidationError

from ..models import Incident


logger = logging.getLogger(__name__)


DEFAULT_STATUS = "Pendiente"
DEFAULT_PRIORITY = "normal"
DEFAULT_INCIDENT_TYPE = "Otros"

TIMESTAMP_FIELDS = ("createdAt", "timestamp")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Best-effort conversion of a source timestamp to an aware UTC datetime.

    Accepts datetimes (naive ones are taken as UTC), ISO 8601 strings
    (a trailing "Z" is allowed), and epoch milliseconds. Returns None when
    the value cannot be interpreted.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _as_mapping(document: Any) -> Optional[Mapping[str, Any]]:
    if isinstance(document, Mapping):
        return document
    to_dict = getattr(document, "to_dict", None)
    if callable(to_dict):
        data = to_dict()
        if isinstance(data, Mapping):
            return data
    return None


def _coordinate(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _text(value: Any, default: str) -> str:
    if value is None:
        return default
    text = str(value).strip()
    return text or default


class IncidentNormalizer:
    """
    Validates and projects raw incident documents.

    Example:
        normalizer = IncidentNormalizer()
        incidents = normalizer.normalize(snapshot_documents)
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize the normalizer.

        Args:
            clock: Returns the current UTC time; used for documents without a
                usable creation timestamp
        """
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def normalize(self, documents: Iterable[Any]) -> List[Incident]:
        """
        Normalize a snapshot, dropping invalid records.

        Args:
            documents: Mappings or document objects exposing `to_dict()`

        Returns:
            Valid incidents in source order
        """
        incidents: List[Incident] = []
        dropped = 0

        for document in documents:
            incident = self.normalize_document(document)
            if incident is None:
                dropped += 1
            else:
                incidents.append(incident)

        if dropped:
            logger.debug(f"Dropped {dropped} malformed records from snapshot")
        return incidents

    def normalize_document(self, document: Any) -> Optional[Incident]:
        """Normalize one document; None if it fails validation."""
        data = _as_mapping(document)
        if data is None:
            return None

        location = data.get("location")
        if isinstance(location, Mapping):
            latitude = _coordinate(location.get("latitude"))
            longitude = _coordinate(location.get("longitude"))
        else:
            latitude = _coordinate(data.get("latitude"))
            longitude = _coordinate(data.get("longitude"))

        if latitude is None or longitude is None:
            return None
        if not (-90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0):
            return None

        timestamp = None
        for field_name in TIMESTAMP_FIELDS:
            timestamp = parse_timestamp(data.get(field_name))
            if timestamp is not None:
                break
        if timestamp is None:
            timestamp = self._clock()

        document_id = data.get("id", getattr(document, "id", None))

        try:
            return Incident(
                id=str(document_id) if document_id is not None else None,
                latitude=latitude,
                longitude=longitude,
                incident_type=_text(data.get("incidentType"), DEFAULT_INCIDENT_TYPE),
                status=_text(data.get("status"), DEFAULT_STATUS),
                priority=_text(data.get("priority"), DEFAULT_PRIORITY),
                urgent=data.get("urgent") is True,
                timestamp=timestamp,
            )
        except ValidationError as e:
            logger.debug(f"Rejected incident document {document_id}: {e}")
            return None
