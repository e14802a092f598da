import asyncio
import ipaddress
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Mapping, Optional, Set, Tuple
from urllib.parse import urljoin

import httpx

from config import Settings
from logger_config import setup_logger

logger = setup_logger()

USER_AGENT = "pastecdn/0.1.0"
AVATAR_URL = "https://p.ihateani.me/static/img/favicon.png"

CLOUDFLARE_NETWORKS = tuple(
    ipaddress.ip_network(net)
    for net in (
        "173.245.48.0/20",
        "103.21.244.0/22",
        "103.22.200.0/22",
        "103.31.4.0/22",
        "141.101.64.0/18",
        "108.162.192.0/18",
        "190.93.240.0/20",
        "188.114.96.0/20",
        "197.234.240.0/22",
        "198.41.128.0/17",
        "162.158.0.0/15",
        "104.16.0.0/13",
        "104.24.0.0/14",
        "172.64.0.0/13",
        "131.0.72.0/22",
        "2400:cb00::/32",
        "2606:4700::/32",
        "2803:f800::/32",
        "2405:b500::/32",
        "2405:8100::/32",
        "2a06:98c0::/29",
        "2c0f:f248::/32",
    )
)

# Most specific first
CLIENT_IP_HEADERS = ("cf-connecting-ip", "cf-connecting-ipv6", "x-forwarded-for", "forwarded", "x-real-ip")


@dataclass(frozen=True)
class NotificationEvent:
    id: str
    kind: str
    size_bytes: int
    created_at: datetime
    public_address: str
    is_admin: bool = False
    client_ips: Tuple[str, ...] = field(default_factory=tuple)


def _candidates(header_name: str, value: str) -> Iterable[str]:
    for part in value.split(","):
        part = part.strip()
        if header_name == "forwarded":
            # Forwarded: for=192.0.2.60;proto=http
            for pair in part.split(";"):
                key, _, val = pair.strip().partition("=")
                if key.lower() == "for":
                    yield val.strip('"').strip("[]")
        else:
            yield part


def _is_public(ip) -> bool:
    if ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_multicast or ip.is_unspecified or ip.is_reserved:
        return False
    return not any(ip in net for net in CLOUDFLARE_NETWORKS if net.version == ip.version)


def extract_client_ips(headers: Mapping[str, str]) -> List[str]:
    """Public client addresses from proxy headers, skipping private and Cloudflare edge IPs."""
    found: List[str] = []
    lowered = {k.lower(): v for k, v in headers.items()}
    for header_name in CLIENT_IP_HEADERS:
        value = lowered.get(header_name)
        if not value:
            continue
        for candidate in _candidates(header_name, value):
            try:
                ip = ipaddress.ip_address(candidate)
            except ValueError:
                continue
            if _is_public(ip) and str(ip) not in found:
                found.append(str(ip))
    return found


@dataclass(frozen=True)
class PageviewEvent:
    url: str
    kind: str
    is_admin_upload: bool = False
    client_ips: Tuple[str, ...] = field(default_factory=tuple)
    referrer: Optional[str] = None
    user_agent: Optional[str] = None


class BackgroundSender:
    """Shared httpx client and detached delivery tasks for the outbound sinks."""

    def __init__(self, timeout: float, client: Optional[httpx.AsyncClient] = None):
        self.timeout = timeout
        self._client = client
        self._tasks: Set[asyncio.Task] = set()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def _schedule(self, coro) -> None:
        task = asyncio.create_task(coro)
        # Keep a reference until done so the task is not garbage collected
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def aclose(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._client is not None:
            await self._client.aclose()


class DiscordNotifier(BackgroundSender):
    """Fire-and-forget Discord webhook sink for admission events."""

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        super().__init__(settings.notifier_timeout, client)
        self.webhook_url = settings.discord_webhook
        self.enabled = settings.notifier_enabled

        if self.enabled and not self.webhook_url:
            logger.warning("Discord webhook URL is not set. Notifications are disabled.")
            self.enabled = False

    @staticmethod
    def build_payload(event: NotificationEvent) -> dict:
        ips = ", ".join(event.client_ips) or "Unknown IP"
        lines = [f"Uploader IPs: **{ips}**"]
        if event.kind == "short":
            lines.append(f"Short URL: **<{event.public_address}>**")
        else:
            lines.append(f"File: **<{event.public_address}>** ({event.kind}, {event.size_bytes} bytes)")
        lines.append(f"Is Admin? **{'Yes' if event.is_admin else 'No'}**")
        return {
            "content": "\n".join(lines),
            "avatar_url": AVATAR_URL,
            "username": "pastecdn Notificator",
            "tts": False,
        }

    def notify(self, event: NotificationEvent) -> None:
        """Schedule delivery and return immediately."""
        if not self.enabled:
            return
        self._schedule(self.send(event))

    async def send(self, event: NotificationEvent) -> bool:
        try:
            response = await self._get_client().post(
                self.webhook_url,
                json=self.build_payload(event),
                headers={"User-Agent": USER_AGENT},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to send Discord notification for {event.id}: {str(e)}")
            return False
        logger.info(f"Discord notification sent for {event.id}")
        return True


class PlausibleTracker(BackgroundSender):
    """Fire-and-forget Plausible pageview reporting for reads."""

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        super().__init__(settings.notifier_timeout, client)
        self.domain = settings.plausible_domain
        self.enabled = settings.plausible_active
        self.endpoint = urljoin(settings.plausible_endpoint, "/api/event")

        if settings.plausible_enabled and not self.domain:
            logger.warning("Plausible domain is not set. Tracking is disabled.")

    def build_payload(self, event: PageviewEvent) -> dict:
        return {
            "name": "pageview",
            "url": event.url,
            "domain": self.domain,
            "referrer": event.referrer,
            "props": {"kind": event.kind, "is_admin_upload": event.is_admin_upload},
            "interactive": False,
        }

    @staticmethod
    def build_headers(event: PageviewEvent) -> dict:
        ips = ", ".join(event.client_ips)
        headers = {"User-Agent": event.user_agent or USER_AGENT}
        if ips:
            headers["X-Forwarded-For"] = ips
            headers["X-Forwarded-Plausible-For"] = ips
        return headers

    def track(self, event: PageviewEvent) -> None:
        """Schedule a pageview report and return immediately."""
        if not self.enabled:
            return
        self._schedule(self.send(event))

    async def send(self, event: PageviewEvent) -> bool:
        logger.debug(f"Reporting pageview to {self.endpoint}: {event.url} ({event.kind})")
        try:
            response = await self._get_client().post(
                self.endpoint,
                json=self.build_payload(event),
                headers=self.build_headers(event),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to report pageview for {event.url}: {str(e)}")
            return False
        return True
