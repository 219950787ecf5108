"""Clock-out signature attachment.

The only mutation ever applied to an attendance event: setting the
signature pair on an accepted CLOCK_OUT that has none. Signing is advisory;
an unsigned shift never blocks the next CLOCK_IN.
"""

import base64
import binascii
import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime

import magic

from app.core.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from app.models.attendance_event import AttendanceEvent
from app.services.timeclock_types import EventStatus, EventType
from app.stores.base import AttendanceEventStore

logger = logging.getLogger(__name__)

PNG_DATA_URL_PREFIX = "data:image/png;base64,"
_PNG_MIME = "image/png"

DEFAULT_SIGNATURE_MAX_BYTES = 256_000


def validate_signature_image(
    signature_image: str,
    max_bytes: int = DEFAULT_SIGNATURE_MAX_BYTES,
) -> bytes:
    """Decode and check a PNG data URL.

    The decoded payload is sniffed with libmagic; the data URL's own MIME
    prefix is not trusted.

    Args:
        signature_image: "data:image/png;base64,<payload>".
        max_bytes: Largest decoded image accepted.

    Returns:
        The decoded PNG bytes.

    Raises:
        ValidationError: Wrong prefix, bad base64, not a PNG, or too large.
    """
    if not signature_image.startswith(PNG_DATA_URL_PREFIX):
        raise ValidationError("Signature must be a PNG data URL.")

    payload = signature_image[len(PNG_DATA_URL_PREFIX) :]
    # Reject before decoding: base64 expands by 4/3
    if len(payload) > (max_bytes * 4) // 3 + 4:
        raise ValidationError("Signature image is too large.")
    try:
        decoded = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError("Signature payload is not valid base64.") from exc

    if len(decoded) > max_bytes:
        raise ValidationError("Signature image is too large.")
    detected_mime = magic.from_buffer(decoded, mime=True)
    if detected_mime != _PNG_MIME:
        # Detected type is logged, never echoed to the client
        logger.warning("Signature content rejected: detected %s", detected_mime)
        raise ValidationError("Signature payload is not a PNG image.")
    return decoded


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SignatureService:
    """Attaches signatures to accepted CLOCK_OUT events.

    Args:
        events: Attendance event store.
        max_bytes: Largest decoded signature image.
        clock: UTC "now" source.
    """

    def __init__(
        self,
        events: AttendanceEventStore,
        max_bytes: int = DEFAULT_SIGNATURE_MAX_BYTES,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.events = events
        self.max_bytes = max_bytes
        self._clock = clock

    async def attach_signature(
        self,
        event_id: uuid.UUID,
        user_id: uuid.UUID,
        signature_image: str,
    ) -> AttendanceEvent:
        """Sign the caller's CLOCK_OUT.

        Args:
            event_id: CLOCK_OUT event to sign.
            user_id: Caller; must own the event.
            signature_image: PNG data URL.

        Returns:
            The signed event.

        Raises:
            NotFoundError: Event missing or owned by someone else.
            InvalidStateError: Event is not an accepted CLOCK_OUT.
            ConflictError: Event is already signed.
            ValidationError: Image is not an acceptable PNG data URL.
        """
        event = await self.events.get(event_id)
        if event is None or event.user_id != user_id:
            raise NotFoundError("Attendance event", str(event_id))
        if (
            event.type != EventType.CLOCK_OUT.value
            or event.status != EventStatus.OK.value
        ):
            raise InvalidStateError("Only an accepted clock-out can be signed.")
        if event.signed_at is not None:
            raise _already_signed()

        validate_signature_image(signature_image, self.max_bytes)

        signed_at = self._clock()
        if not await self.events.attach_signature(event_id, signed_at, signature_image):
            # A concurrent request signed it first
            raise _already_signed()

        logger.info("Signature attached to clock-out %s", event_id)
        signed = await self.events.get(event_id)
        if signed is None:
            raise NotFoundError("Attendance event", str(event_id))
        return signed


def _already_signed() -> ConflictError:
    return ConflictError(
        code="SIGNATURE_ALREADY_ATTACHED",
        message="This clock-out has already been signed.",
    )
