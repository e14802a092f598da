import asyncio
from typing import AsyncIterator, Iterable, List, Optional, Tuple, Union

from pydantic import HttpUrl, TypeAdapter, ValidationError

from app.models.records import ObjectRecord, Role, ShortLinkRecord, utcnow
from app.services.blob_store import BlobStore
from app.services.classifier import SNIFF_LENGTH, classify
from app.services.errors import BlockedError, InvalidUrlError, StorageFailure, TooLargeError
from app.services.identifier_generator import IdentifierGenerator
from app.services.metadata_store import MetadataStore
from app.services.notifier import DiscordNotifier, NotificationEvent
from app.services.policy_filter import PolicyFilter
from config import Settings
from logger_config import setup_logger

logger = setup_logger()

COMMIT_ATTEMPTS = 3

_http_url = TypeAdapter(HttpUrl)


def validate_url(url: str) -> str:
    """Validate a shorten target (absolute http/https URL with a host). Returns the trimmed URL."""
    url = (url or "").strip()
    if not url:
        raise InvalidUrlError(url, "URL is required")
    try:
        _http_url.validate_python(url)
    except ValidationError as e:
        reason = e.errors()[0]["msg"] if e.errors() else "Invalid URL format"
        raise InvalidUrlError(url, reason) from e
    return url


async def _single_chunk(data: bytes) -> AsyncIterator[bytes]:
    yield data


async def peek(chunks: AsyncIterator[bytes], length: int) -> Tuple[bytes, AsyncIterator[bytes]]:
    """Read at least ``length`` bytes (or everything) without losing them.

    Returns the head and an iterator that replays the head followed by the
    rest of the stream.
    """
    buffered: List[bytes] = []
    size = 0
    exhausted = False
    while size < length:
        try:
            chunk = await chunks.__anext__()
        except StopAsyncIteration:
            exhausted = True
            break
        if chunk:
            buffered.append(chunk)
            size += len(chunk)

    async def replay():
        for chunk in buffered:
            yield chunk
        if not exhausted:
            async for chunk in chunks:
                yield chunk

    return b"".join(buffered)[:length], replay()


class AdmissionPipeline:
    """classify -> policy -> reserve identifier -> blob -> record -> notify."""

    def __init__(
        self,
        settings: Settings,
        metadata_store: MetadataStore,
        blob_store: BlobStore,
        notifier: Optional[DiscordNotifier] = None,
        identifiers: Optional[IdentifierGenerator] = None,
        policy: Optional[PolicyFilter] = None,
    ):
        self.settings = settings
        self.metadata_store = metadata_store
        self.blob_store = blob_store
        self.notifier = notifier
        self.identifiers = identifiers or IdentifierGenerator(
            metadata_store, settings.filename_length, settings.reservation_ttl
        )
        self.policy = policy or PolicyFilter(settings)

    async def admit(
        self,
        data: bytes,
        declared_filename: Optional[str],
        role: Role = Role.NORMAL,
        client_ips: Iterable[str] = (),
    ) -> str:
        """Store an in-memory upload and return its public address."""
        return await self.admit_stream(
            _single_chunk(data),
            declared_filename,
            role,
            declared_size=len(data),
            client_ips=client_ips,
        )

    async def admit_stream(
        self,
        chunks: AsyncIterator[bytes],
        declared_filename: Optional[str],
        role: Role = Role.NORMAL,
        declared_size: Optional[int] = None,
        declared_content_type: Optional[str] = None,
        client_ips: Iterable[str] = (),
    ) -> str:
        """Store a streamed upload and return its public address.

        The size ceiling is checked up front when ``declared_size`` is
        known and again on every chunk, so a lying client is cut off too.
        The content type the client declared is held to the blocklist as
        well as the sniffed one.

        Raises:
            BlockedError, TooLargeError: the upload is not admissible
            StorageFailure: a store failed; nothing is registered
            IdentifierExhaustedError: no free identifier was found
        """
        head, stream = await peek(chunks, SNIFF_LENGTH)
        classification = classify(head, declared_filename)
        logger.debug(
            f"Classified {declared_filename!r} as {classification.kind.value} ({classification.content_type})"
        )

        try:
            if declared_content_type:
                self.policy.check_blocklist(declared_content_type, "")
            if declared_size is not None:
                self.policy.check(classification.content_type, classification.extension, declared_size, role)
            else:
                self.policy.check_blocklist(classification.content_type, classification.extension)
        except (BlockedError, TooLargeError) as e:
            logger.info(f"Rejected upload {declared_filename!r}: {e}")
            raise

        identifier = await self.identifiers.reserve()
        try:
            size = await self.blob_store.write(identifier, self._enforce_ceiling(stream, role))
        except BaseException:
            # Includes cancellation: the blob never reached its final path
            await self._abandon(identifier)
            raise

        record = ObjectRecord(
            id=identifier,
            content_type=classification.content_type,
            kind=classification.kind,
            size_bytes=size,
            created_at=utcnow(),
            role_at_upload=role,
            extension=classification.extension,
        )
        try:
            await self._commit(record)
        except StorageFailure:
            logger.error(f"Blob {identifier} stored but its record was not; left for the orphan sweep")
            raise

        address = self.settings.make_url(identifier)
        logger.info(f"Stored {identifier} ({record.kind.value}, {size} bytes, {role.value})")
        self._emit(
            NotificationEvent(
                id=identifier,
                kind=record.kind.value,
                size_bytes=size,
                created_at=record.created_at,
                public_address=address,
                is_admin=role is Role.ADMIN,
                client_ips=tuple(client_ips),
            )
        )
        return address

    async def shorten(self, target_url: str, role: Role = Role.NORMAL, client_ips: Iterable[str] = ()) -> str:
        """Register a short link and return its public address."""
        try:
            url = validate_url(target_url)
        except InvalidUrlError as e:
            logger.info(f"Rejected short link: {e}")
            raise

        identifier = await self.identifiers.reserve()
        record = ShortLinkRecord(id=identifier, target_url=url, created_at=utcnow(), role_at_upload=role)
        try:
            await self._commit(record)
        except BaseException:
            await self._abandon(identifier)
            raise

        address = self.settings.make_url(identifier)
        logger.info(f"Shortened {url} to {identifier}")
        self._emit(
            NotificationEvent(
                id=identifier,
                kind="short",
                size_bytes=0,
                created_at=record.created_at,
                public_address=address,
                is_admin=role is Role.ADMIN,
                client_ips=tuple(client_ips),
            )
        )
        return address

    async def _enforce_ceiling(self, chunks: AsyncIterator[bytes], role: Role) -> AsyncIterator[bytes]:
        total = 0
        async for chunk in chunks:
            total += len(chunk)
            self.policy.check_size(total, role)
            yield chunk

    async def _commit(self, record: Union[ObjectRecord, ShortLinkRecord]) -> None:
        # Same identifier on every attempt; a retry never mints a second one
        for attempt in range(1, COMMIT_ATTEMPTS + 1):
            try:
                await self.metadata_store.put(record)
                return
            except StorageFailure as e:
                if attempt == COMMIT_ATTEMPTS:
                    raise
                logger.warning(f"Record write for {record.id} failed (attempt {attempt}): {e}")
                await asyncio.sleep(0.05 * attempt)

    async def _abandon(self, identifier: str) -> None:
        try:
            await self.identifiers.release(identifier)
        except StorageFailure as e:
            logger.warning(f"Could not release reservation {identifier}, it will expire: {e}")

    def _emit(self, event: NotificationEvent) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify(event)
        except Exception as e:
            logger.error(f"Failed to schedule notification for {event.id}: {e}")
