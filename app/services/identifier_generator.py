import random
import string

from app.models.records import ReservationRecord, utcnow
from app.services.errors import IdentifierExhaustedError
from app.services.metadata_store import MetadataStore
from logger_config import setup_logger

logger = setup_logger()

ALPHABET = string.ascii_letters + string.digits
MAX_ATTEMPTS = 100

_rng = random.SystemRandom()


def generate(length: int) -> str:
    """Return a random alphanumeric identifier of the given length."""
    return ''.join(_rng.choice(ALPHABET) for _ in range(length))


class IdentifierGenerator:
    def __init__(self, store: MetadataStore, length: int, reservation_ttl: int, max_attempts: int = MAX_ATTEMPTS):
        self.store = store
        self.length = length
        self.reservation_ttl = reservation_ttl
        self.max_attempts = max_attempts

    async def reserve(self) -> str:
        """Claim a fresh identifier in the shared record namespace.

        The claim is a set-if-absent of a reservation record, so two
        concurrent uploads drawing the same identifier cannot both win.
        The reservation expires on its own if the upload never commits.

        Raises:
            IdentifierExhaustedError: every attempt collided
            StorageFailure: the metadata store is unreachable
        """
        for attempt in range(1, self.max_attempts + 1):
            identifier = generate(self.length)
            reservation = ReservationRecord(id=identifier, created_at=utcnow())
            if await self.store.set_if_absent(identifier, reservation, ttl_seconds=self.reservation_ttl):
                if attempt > 1:
                    logger.debug(f"Reserved identifier {identifier} after {attempt} attempts")
                return identifier
            logger.debug(f"Identifier collision on {identifier}, regenerating")

        logger.critical(f"Identifier space exhausted for length {self.length}")
        raise IdentifierExhaustedError(self.max_attempts, self.length)

    async def release(self, identifier: str) -> None:
        """Drop a reservation that will never be committed."""
        await self.store.delete_reservation(identifier)
