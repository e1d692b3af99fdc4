"""High-level async valet service."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import OrderedDict
from typing import Any

import aiohttp

from pyvalet import messages
from pyvalet._constants import normalize_phone
from pyvalet._images import CloudinaryImageHost, ImageHost, QrRenderer, UrlQrRenderer
from pyvalet._mqtt import DashboardMqttRuntime, MqttTarget
from pyvalet._transport import MessagingChannel, WhatsAppChannel
from pyvalet.allocator import Allocator
from pyvalet.config import ValetConfig
from pyvalet.conversation import (
    ConversationEngine,
    ConversationOutcome,
    Intent,
    RequestRetrieval,
    ScanToken,
    SetDriverStatus,
    StartCheckIn,
    SubmitParkedPhoto,
)
from pyvalet.dashboard import DashboardPublisher
from pyvalet.events import EventLog
from pyvalet.exceptions import ValetError, ValetTransportError
from pyvalet.ledger import IssuedToken, TokenLedger
from pyvalet.models.car import Car, CarStatus
from pyvalet.models.dashboard import DashboardSnapshot
from pyvalet.models.driver import Driver
from pyvalet.models.log import LogEntry
from pyvalet.models.message import InboundMessage
from pyvalet.models.token import TokenKind
from pyvalet.outbox import Outbox
from pyvalet.results import Err, FailureReason, Result
from pyvalet.store import ResourceStore

_logger = logging.getLogger(__name__)

_HOUSEKEEPING_INTERVAL_S = 600.0
_PHOTO_FOLDER = "parked_cars"


class ValetService:
    """Orchestrates inbound messages through the engine, allocator and outbox.

    Usage::

        async with ValetService(config) as service:
            await service.handle_inbound(message)

    Collaborators default to the WhatsApp channel, Cloudinary (when
    configured) and the URL QR renderer (when configured); tests pass
    their own.
    """

    def __init__(
        self,
        config: ValetConfig,
        *,
        store: ResourceStore | None = None,
        channel: MessagingChannel | None = None,
        image_host: ImageHost | None = None,
        qr_renderer: QrRenderer | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._config = config
        self.store = store if store is not None else ResourceStore(path=config.store_path)
        self.ledger = TokenLedger(self.store, business_number=config.whatsapp.business_number)
        self.allocator = Allocator(
            self.store,
            self.ledger,
            checkin_token_ttl=config.checkin_token_ttl,
            retrieval_token_ttl=config.retrieval_token_ttl,
        )
        self.engine = ConversationEngine(self.store)
        self.events = EventLog(self.store)
        self._mqtt_runtime: DashboardMqttRuntime | None = (
            DashboardMqttRuntime(keepalive=config.mqtt_keepalive) if config.mqtt_enabled else None
        )
        self.dashboard = DashboardPublisher(
            self.store,
            log_limit=config.dashboard_log_limit,
            mqtt_runtime=self._mqtt_runtime,
        )

        self._external_session = session is not None
        self._http_session = session
        self._channel = channel
        self._image_host = image_host
        self._qr_renderer = qr_renderer
        self._outbox: Outbox | None = None
        self._housekeeping: asyncio.Task[None] | None = None
        self._seen_ids: OrderedDict[str, None] = OrderedDict()

    @property
    def config(self) -> ValetConfig:
        return self._config

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> ValetService:
        loop = asyncio.get_running_loop()
        if self._channel is None or (self._image_host is None and self._config.cloudinary.cloud_name):
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession()
        if self._channel is None:
            assert self._http_session is not None  # noqa: S101
            self._channel = WhatsAppChannel(self._config.whatsapp, self._http_session)
        if self._image_host is None and self._config.cloudinary.cloud_name:
            assert self._http_session is not None  # noqa: S101
            self._image_host = CloudinaryImageHost(self._config.cloudinary, self._http_session)
        if self._qr_renderer is None and self._config.qr_image_url:
            self._qr_renderer = UrlQrRenderer(self._config.qr_image_url)

        self.store.initialize_slots(self._config.total_slots)
        self._outbox = Outbox(self._channel)
        self._outbox.start()
        self.dashboard.attach(loop)
        self._start_mqtt()
        self._housekeeping = loop.create_task(self._run_housekeeping(), name="pyvalet-housekeeping")
        return self

    async def __aexit__(self, *exc: Any) -> None:
        if self._housekeeping is not None:
            self._housekeeping.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._housekeeping
            self._housekeeping = None
        if self._outbox is not None:
            await self._outbox.stop()
            self._outbox = None
        self.dashboard.detach()
        if self._mqtt_runtime is not None:
            self._mqtt_runtime.stop()
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    def _start_mqtt(self) -> None:
        if self._mqtt_runtime is None:
            return
        target = MqttTarget(
            host=self._config.mqtt_host,
            port=self._config.mqtt_port,
            topic=self._config.mqtt_topic,
        )
        try:
            self._mqtt_runtime.start(target)
        except ValetTransportError as exc:
            _logger.warning("Dashboard MQTT publishing disabled: %s", exc)

    async def _run_housekeeping(self) -> None:
        while True:
            await asyncio.sleep(_HOUSEKEEPING_INTERVAL_S)
            try:
                self.purge_expired_tokens()
            except ValetError:
                _logger.exception("Token housekeeping failed")

    def _require_outbox(self) -> Outbox:
        if self._outbox is None:
            raise ValetError("Service not started. Use 'async with ValetService(...) as service:'")
        return self._outbox

    async def flush(self) -> None:
        """Wait for every queued outbound message to be attempted."""
        await self._require_outbox().flush()

    # ------------------------------------------------------------------
    # Inbound messages
    # ------------------------------------------------------------------

    def _is_duplicate(self, message_id: str | None) -> bool:
        if not message_id:
            return False
        if message_id in self._seen_ids:
            self._seen_ids.move_to_end(message_id)
            return True
        self._seen_ids[message_id] = None
        while len(self._seen_ids) > self._config.dedup_window:
            self._seen_ids.popitem(last=False)
        return False

    async def handle_inbound(self, message: InboundMessage) -> ConversationOutcome | None:
        """Process one inbound message; returns ``None`` for a duplicate delivery."""
        outbox = self._require_outbox()
        if self._is_duplicate(message.message_id):
            _logger.debug("Dropping duplicate delivery %s", message.message_id)
            return None

        try:
            outcome = self.engine.handle(message)
            sender = normalize_phone(message.sender)
            for reply in outcome.replies:
                outbox.send_text(sender, reply)
            if outcome.intent is not None:
                await self._dispatch(outcome.intent, sender)
        except Exception:
            # A redelivery of a message that failed must be processed again.
            if message.message_id:
                self._seen_ids.pop(message.message_id, None)
            raise
        return outcome

    async def _dispatch(self, intent: Intent, sender: str) -> None:
        if isinstance(intent, StartCheckIn):
            await self._start_check_in(intent)
        elif isinstance(intent, ScanToken):
            self._scan(intent)
        elif isinstance(intent, SubmitParkedPhoto):
            await self._park_with_photo(intent)
        elif isinstance(intent, RequestRetrieval):
            await self._request_retrieval(intent)
        elif isinstance(intent, SetDriverStatus):
            self._set_driver_status(intent)
        else:
            raise ValetError(f"Unhandled intent {intent!r} from {sender}")

    def _reply_failure(self, to: str, outcome: Err) -> None:
        self._require_outbox().send_text(to, messages.failure_message(outcome.reason))

    async def _send_qr(self, to: str, issued: IssuedToken, caption: str) -> None:
        if self._qr_renderer is None:
            return
        try:
            image_ref = await self._qr_renderer.render(issued.qr_payload)
        except ValetTransportError as exc:
            _logger.warning("QR rendering failed for car %s: %s", issued.record.car_id, exc)
            return
        self._require_outbox().send_image(to, image_ref, caption)

    # ------------------------------------------------------------------
    # Intent handlers
    # ------------------------------------------------------------------

    async def _start_check_in(self, intent: StartCheckIn) -> None:
        outbox = self._require_outbox()
        outcome = self.allocator.register_intake(intent.fields, intent.requester_phone)
        if isinstance(outcome, Err):
            self._reply_failure(intent.requester_phone, outcome)
            return
        intake = outcome.value
        await self._send_qr(intent.requester_phone, intake.token, messages.CHECKIN_QR_CAPTION)
        outbox.send_text(
            intent.requester_phone,
            messages.checkin_qr_ready(intake.car.number_plate, intake.token.qr_payload),
        )

    def _scan(self, intent: ScanToken) -> None:
        outbox = self._require_outbox()
        scanner = self.store.view().driver_by_phone(intent.scanner_phone)
        if scanner is None:
            _logger.warning("QR scan from unregistered number %s rejected", intent.scanner_phone)
            outbox.send_text(intent.scanner_phone, messages.NOT_A_DRIVER)
            return

        payload = intent.payload
        record = self.ledger.peek(payload.token)
        if record is None:
            outbox.send_text(intent.scanner_phone, messages.failure_message(FailureReason.TOKEN_INVALID))
            return

        if record.kind is TokenKind.CHECKIN:
            checked_in = self.allocator.try_check_in(
                payload.car_id,
                payload.token,
                owner_id=payload.owner_id,
                scanning_driver_id=scanner.id,
            )
            if isinstance(checked_in, Err):
                self._reply_failure(intent.scanner_phone, checked_in)
                return
            result = checked_in.value
            outbox.send_text(
                result.car.owner_phone,
                messages.owner_checked_in(result.car.number_plate, result.slot_number, result.driver_name),
            )
            outbox.send_text(result.driver.phone, messages.driver_assigned(result.car.number_plate, result.slot_number))
            if result.driver.id != scanner.id:
                outbox.send_text(
                    intent.scanner_phone,
                    messages.scanner_handoff(result.car.number_plate, result.slot_number, result.driver_name),
                )
            return

        retrieved = self.allocator.try_retrieve(payload.token, payload.car_id, payload.owner_id, scanner.id)
        if isinstance(retrieved, Err):
            self._reply_failure(intent.scanner_phone, retrieved)
            return
        car = retrieved.value.car
        outbox.send_text(car.owner_phone, messages.owner_retrieved(car.number_plate))
        outbox.send_text(intent.scanner_phone, messages.driver_retrieved(car.number_plate))

    async def _park_with_photo(self, intent: SubmitParkedPhoto) -> None:
        outbox = self._require_outbox()
        driver = self.store.view().driver_by_phone(intent.driver_phone)
        if driver is None:
            _logger.warning("Parked photo from unregistered number %s rejected", intent.driver_phone)
            outbox.send_text(intent.driver_phone, messages.NOT_A_DRIVER)
            return
        assigned = self.store.view().cars_where(
            lambda c: c.status is CarStatus.CHECKED_IN and c.driver_id == driver.id
        )
        if not assigned:
            outbox.send_text(intent.driver_phone, messages.failure_message(FailureReason.NO_ASSIGNED_CAR))
            return

        photo_url: str | None = None
        if self._image_host is not None and self._channel is not None:
            try:
                data = await self._channel.fetch_media(intent.image_ref)
                photo_url = await self._image_host.upload_image(data, _PHOTO_FOLDER)
            except ValetTransportError as exc:
                _logger.warning("Parked photo upload for driver %s failed: %s", driver.id, exc)
                outbox.send_text(intent.driver_phone, messages.PHOTO_UPLOAD_FAILED)
                return
        else:
            _logger.debug("No image host configured; parking without a stored photo")

        parked = self.allocator.try_park(driver.id, photo_url)
        if isinstance(parked, Err):
            self._reply_failure(intent.driver_phone, parked)
            return
        car = parked.value.car
        slot = self.store.view().get_slot(car.slot_id) if car.slot_id else None
        outbox.send_text(intent.driver_phone, messages.driver_parked(car.number_plate))
        outbox.send_text(car.owner_phone, messages.owner_parked(car.number_plate, slot.slot_number if slot else 0))

    async def _request_retrieval(self, intent: RequestRetrieval) -> None:
        outbox = self._require_outbox()
        outcome = self.allocator.request_retrieval(intent.owner_phone)
        if isinstance(outcome, Err):
            self._reply_failure(intent.owner_phone, outcome)
            return
        request = outcome.value
        car, driver = request.car, request.driver
        await self._send_qr(intent.owner_phone, request.token, messages.RETRIEVAL_QR_CAPTION)
        outbox.send_text(
            intent.owner_phone,
            messages.owner_retrieval_requested(car.number_plate, driver.name, driver.phone, request.token.qr_payload),
        )
        if not request.reissued:
            outbox.send_text(
                driver.phone,
                messages.driver_retrieval_assigned(
                    car.number_plate, car.owner_name, car.owner_phone, request.slot.slot_number
                ),
            )

    def _set_driver_status(self, intent: SetDriverStatus) -> None:
        outbox = self._require_outbox()
        driver = self.store.view().driver_by_phone(intent.driver_phone)
        if driver is None:
            _logger.warning("Status change from unregistered number %s rejected", intent.driver_phone)
            outbox.send_text(intent.driver_phone, messages.NOT_A_DRIVER)
            return
        outcome = self.allocator.set_driver_availability(driver.id, intent.available)
        if isinstance(outcome, Err):
            self._reply_failure(intent.driver_phone, outcome)
            return
        outbox.send_text(intent.driver_phone, messages.driver_status_changed(outcome.value.available))

    # ------------------------------------------------------------------
    # Administration and queries
    # ------------------------------------------------------------------

    def register_driver(self, name: str, phone: str) -> Result[Driver]:
        return self.allocator.register_driver(name, phone)

    def abandon_pending(self, car_id: str) -> Result[Car]:
        return self.allocator.abandon_pending(car_id)

    def reset(self) -> None:
        self.allocator.reset()

    def purge_expired_tokens(self) -> int:
        return self.ledger.purge_expired(self._config.token_retention)

    def dashboard_snapshot(self) -> DashboardSnapshot:
        return self.dashboard.snapshot()

    def drivers(self) -> list[Driver]:
        return self.store.view().drivers()

    def cars(self) -> list[Car]:
        return self.store.view().cars()

    def recent_logs(self, limit: int | None = None) -> list[LogEntry]:
        return self.events.recent(self._config.dashboard_log_limit if limit is None else limit)
