"""
Менеджер провайдеров STT.

Назначение:
- реестр адаптеров (по одному слоту на тип провайдера из EngineConfig)
- единственный "текущий" провайдер и его переключение
- ретраи / автоматический fallback по политике профиля
- ограничение конкурентности (семафор на провайдера, очередь FIFO)
- машина состояний провайдера (domain.state_machine)

Гарантии:
- переключение дожидается всех вызовов transcribe на уходящем провайдере,
  останавливает его и только потом активирует новый (нет окна с двумя активными)
- два переключения одновременно не выполняются: второе получает SwitchInProgressError
- каждая ошибка, которую видит вызывающий, уже записана в ErrorTracker
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field

from stt_orchestrator.common.errors import (
    NotInitializedError,
    NotStreamingError,
    ProviderError,
    SwitchInProgressError,
)
from stt_orchestrator.common.events import EventChannel
from stt_orchestrator.common.logging import get_project_logger
from stt_orchestrator.common.metrics import (
    PROVIDER_INFLIGHT,
    PROVIDER_SWITCHES_TOTAL,
    TRANSCRIBE_LATENCY_MS,
    TRANSCRIBE_REQUESTS_TOTAL,
)
from stt_orchestrator.common.time import monotonic
from stt_orchestrator.contracts.events import ProviderSwitchedEvent
from stt_orchestrator.domain.enums import ProviderState, ProviderType
from stt_orchestrator.domain.models import AudioChunk, ProviderStatus, TranscriptionResult
from stt_orchestrator.domain.state_machine import is_initialized, transition
from stt_orchestrator.services.error_tracker import ErrorTracker
from stt_orchestrator.stt.base import STTProvider
from stt_orchestrator.stt.config import EngineConfig, TranscriptionOptions
from stt_orchestrator.stt.factory import build_provider

log = get_project_logger()

ProviderFactory = Callable[..., STTProvider]


# =============================================================================
# СОСТОЯНИЕ ПРОВАЙДЕРА
# =============================================================================
@dataclass
class ProviderSlot:
    """
    Явное состояние одного провайдера: адаптер, счётчики отказов, семафор.
    """

    kind: ProviderType
    adapter: STTProvider
    config: object
    semaphore: asyncio.Semaphore
    state: ProviderState = ProviderState.uninitialized
    in_flight: int = 0
    idle: asyncio.Event = field(default_factory=asyncio.Event)
    init_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    consecutive_failures: int = 0
    last_failure_at: float | None = None
    last_error: str | None = None

    def __post_init__(self) -> None:
        self.idle.set()

    @property
    def usable(self) -> bool:
        return is_initialized(self.state)

    def reset_failures(self) -> None:
        self.consecutive_failures = 0
        self.last_failure_at = None


class ProviderManager:
    def __init__(
        self,
        config: EngineConfig,
        *,
        tracker: ErrorTracker | None = None,
        events: EventChannel | None = None,
        provider_factory: ProviderFactory = build_provider,
    ) -> None:
        self.events = events
        self.tracker = tracker or ErrorTracker(events=events)
        self._factory = provider_factory

        self._config = config
        self._slots: dict[ProviderType, ProviderSlot] = {
            kind: self._build_slot(kind, cfg, config.max_concurrent_requests)
            for kind, cfg in config.providers.items()
        }
        self._current: ProviderType | None = None
        self._streaming = False

        self._switch_lock = asyncio.Lock()
        self._no_switch = asyncio.Event()
        self._no_switch.set()

    # -------------------------------------------------------------------------
    # Свойства
    # -------------------------------------------------------------------------
    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def is_streaming(self) -> bool:
        return self._streaming

    @property
    def is_switching(self) -> bool:
        return self._switch_lock.locked()

    def get_current_provider(self) -> ProviderType | None:
        return self._current

    def slot(self, kind: ProviderType) -> ProviderSlot | None:
        return self._slots.get(kind)

    def get_provider_status(self) -> list[ProviderStatus]:
        out: list[ProviderStatus] = []
        for slot in self._slots.values():
            st = slot.adapter.get_status()
            st.state = slot.state
            st.is_initialized = slot.usable
            st.is_available = slot.usable and slot.state != ProviderState.error
            st.last_error = slot.last_error or st.last_error
            out.append(st)
        return out

    # -------------------------------------------------------------------------
    # Внутреннее: слоты и состояния
    # -------------------------------------------------------------------------
    def _build_slot(self, kind: ProviderType, cfg, limit: int) -> ProviderSlot:
        return ProviderSlot(
            kind=kind,
            adapter=self._factory(kind, cfg),
            config=cfg,
            semaphore=asyncio.Semaphore(limit),
        )

    def _set_state(self, slot: ProviderSlot, target: ProviderState) -> bool:
        res = transition(slot.state, target)
        if not res.ok:
            log.warning(
                "provider_transition_rejected",
                extra={"payload": {"provider": slot.kind.value, "reason": res.reason}},
            )
            return False
        slot.state = res.state
        return True

    def _capture(self, exc: BaseException, *, provider: str | None, operation: str) -> None:
        self.tracker.capture(exc, provider=provider, operation=operation)

    async def _initialize_slot(self, slot: ProviderSlot) -> None:
        async with slot.init_lock:
            if slot.usable:
                return
            if slot.state == ProviderState.failed:
                # явная переинициализация: адаптер начинает с чистого листа
                await asyncio.to_thread(slot.adapter.close)
            self._set_state(slot, ProviderState.initializing)
            try:
                await asyncio.to_thread(slot.adapter.initialize)
            except ProviderError as e:
                self._set_state(slot, ProviderState.failed)
                slot.last_error = e.message
                self._capture(e, provider=slot.kind.value, operation="initialize")
                raise
            self._set_state(slot, ProviderState.ready)
            slot.last_error = None
            slot.reset_failures()

    async def _drain(self, slot: ProviderSlot) -> None:
        if slot.in_flight:
            log.info(
                "provider_draining",
                extra={"payload": {"provider": slot.kind.value, "in_flight": slot.in_flight}},
            )
        await slot.idle.wait()

    async def _deactivate(self, slot: ProviderSlot) -> None:
        await asyncio.to_thread(slot.adapter.stop_streaming)
        if slot.state in (ProviderState.streaming, ProviderState.ready, ProviderState.error):
            self._set_state(slot, ProviderState.stopped)

    async def _activate(self, slot: ProviderSlot) -> None:
        await asyncio.to_thread(slot.adapter.start_streaming)
        if slot.state == ProviderState.recovering:
            self._set_state(slot, ProviderState.ready)
        self._set_state(slot, ProviderState.streaming)

    def _current_slot(self) -> ProviderSlot | None:
        if self._current is None:
            return None
        return self._slots.get(self._current)

    async def _switch_locked(
        self, source: ProviderSlot | None, target: ProviderSlot, reason: str
    ) -> None:
        """
        Переключение source -> target. Вызывать только под _switch_lock.
        """
        if source is target:
            return

        self._no_switch.clear()
        try:
            if source is not None:
                await self._drain(source)
                await self._deactivate(source)
            if self._streaming:
                try:
                    await self._activate(target)
                except ProviderError as e:
                    # откат: прежний провайдер остаётся текущим
                    if source is not None:
                        await self._activate(source)
                    self._capture(e, provider=target.kind.value, operation="switch")
                    raise
            self._current = target.kind
            target.reset_failures()
            if source is not None:
                source.reset_failures()
        finally:
            self._no_switch.set()

        source_name = source.kind.value if source is not None else None
        PROVIDER_SWITCHES_TOTAL.labels(
            source=source_name or "none", target=target.kind.value, reason=reason
        ).inc()
        log.info(
            "provider_switched",
            extra={
                "payload": {"source": source_name, "target": target.kind.value, "reason": reason}
            },
        )
        if self.events is not None:
            self.events.publish(
                ProviderSwitchedEvent(source=source_name, target=target.kind.value, reason=reason)
            )

    # -------------------------------------------------------------------------
    # Публичные операции
    # -------------------------------------------------------------------------
    async def initialize_provider(self, kind: ProviderType) -> ProviderStatus:
        """
        Инициализирует провайдера (идемпотентно). Незарегистрированный тип
        добавляется в реестр с конфигом по умолчанию.
        """
        kind = ProviderType(kind)
        slot = self._slots.get(kind)
        if slot is None:
            slot = self._build_slot(
                kind, self._config.provider_config(kind), self._config.max_concurrent_requests
            )
            self._slots[kind] = slot

        await self._initialize_slot(slot)
        if self._current is None:
            self._current = kind
        log.info("provider_ready", extra={"payload": {"provider": kind.value}})
        return self._status_of(slot)

    async def switch_provider(self, kind: ProviderType, *, reason: str = "manual") -> ProviderStatus:
        kind = ProviderType(kind)
        if self._switch_lock.locked():
            err = SwitchInProgressError(details={"target": kind.value})
            self._capture(err, provider=None, operation="switch")
            raise err

        slot = self._slots.get(kind)
        if slot is None or not slot.usable:
            err = NotInitializedError(
                details={"provider": kind.value, "registered": slot is not None}
            )
            self._capture(err, provider=kind.value, operation="switch")
            raise err

        async with self._switch_lock:
            await self._switch_locked(self._current_slot(), slot, reason)
        return self._status_of(slot)

    async def configure(self, config: EngineConfig) -> None:
        """
        Атомарно применяет новый EngineConfig (смена профиля):
        - строит/переиспользует слоты, инициализирует default_provider
        - при ошибке прежняя конфигурация остаётся активной
        """
        if self._switch_lock.locked():
            err = SwitchInProgressError(details={"target": config.default_provider.value})
            self._capture(err, provider=None, operation="configure")
            raise err

        async with self._switch_lock:
            new_slots: dict[ProviderType, ProviderSlot] = {}
            built: list[ProviderSlot] = []
            for kind, cfg in config.providers.items():
                old = self._slots.get(kind)
                if old is not None and old.config == cfg:
                    if config.max_concurrent_requests != self._config.max_concurrent_requests:
                        old.semaphore = asyncio.Semaphore(config.max_concurrent_requests)
                    new_slots[kind] = old
                else:
                    slot = self._build_slot(kind, cfg, config.max_concurrent_requests)
                    new_slots[kind] = slot
                    built.append(slot)

            target = new_slots[config.default_provider]
            try:
                await self._initialize_slot(target)
            except ProviderError:
                for slot in built:
                    await asyncio.to_thread(slot.adapter.close)
                raise

            prev_slots, prev_config = self._slots, self._config
            try:
                await self._switch_locked(self._current_slot(), target, "profile")
            except ProviderError:
                for slot in built:
                    await asyncio.to_thread(slot.adapter.close)
                raise

            self._slots = new_slots
            self._config = config
            for kind, slot in prev_slots.items():
                if new_slots.get(kind) is not slot:
                    await self._drain(slot)
                    await asyncio.to_thread(slot.adapter.close)

        log.info(
            "engine_configured",
            extra={
                "payload": {
                    "default_provider": config.default_provider.value,
                    "fallback_provider": (
                        config.fallback_provider.value if config.fallback_provider else None
                    ),
                    "providers": [k.value for k in config.providers],
                    "prev_default": prev_config.default_provider.value,
                }
            },
        )
        if self._streaming:
            await self._prepare_fallback()

    async def start_streaming(self) -> ProviderStatus:
        kind = self._current or self._config.default_provider
        if self._streaming:
            return self._status_of(self._slots[kind])

        await self.initialize_provider(kind)
        slot = self._slots[kind]
        await self._activate(slot)
        self._current = kind
        self._streaming = True
        log.info("provider_streaming_started", extra={"payload": {"provider": kind.value}})

        await self._prepare_fallback()
        return self._status_of(slot)

    async def stop_streaming(self) -> None:
        """
        Новые вызовы transcribe отклоняются, уже начатые завершаются.
        """
        if not self._streaming:
            return
        self._streaming = False
        if self._current is not None:
            slot = self._slots[self._current]
            await self._drain(slot)
            await self._deactivate(slot)
        log.info(
            "provider_streaming_stopped",
            extra={"payload": {"provider": self._current.value if self._current else None}},
        )

    async def close(self) -> None:
        await self.stop_streaming()
        for slot in self._slots.values():
            await asyncio.to_thread(slot.adapter.close)

    async def _prepare_fallback(self) -> None:
        """
        Fallback инициализируется заранее: иначе при отказе переключаться некуда.
        """
        cfg = self._config
        fb = cfg.fallback_provider
        if not cfg.auto_switch or fb is None or fb == self._current:
            return
        slot = self._slots.get(fb)
        if slot is None or slot.usable:
            return
        try:
            await self._initialize_slot(slot)
        except ProviderError as e:
            # ошибка уже в ErrorTracker; без fallback стриминг продолжается
            log.warning(
                "fallback_unavailable",
                extra={"payload": {"provider": fb.value, "err": e.message}},
            )

    # -------------------------------------------------------------------------
    # Распознавание: ретраи и fallback
    # -------------------------------------------------------------------------
    def _note_failure(self, slot: ProviderSlot, err: ProviderError, call_started: float) -> None:
        # окно считается от прошлого отказа до старта этого вызова:
        # длительность самого вызова (в т.ч. таймаут) серию не обрывает
        window_s = self._config.connection_timeout / 1000.0
        if slot.last_failure_at is None or call_started - slot.last_failure_at > window_s:
            slot.consecutive_failures = 0
        slot.last_failure_at = monotonic()
        slot.consecutive_failures += 1
        slot.last_error = err.message

        if slot.state == ProviderState.recovering:
            self._set_state(slot, ProviderState.error)
        elif slot.state in (ProviderState.streaming, ProviderState.ready):
            self._set_state(slot, ProviderState.error)
        if err.fatal:
            self._set_state(slot, ProviderState.failed)

    def _note_success(self, slot: ProviderSlot) -> None:
        if slot.state in (ProviderState.error, ProviderState.recovering):
            if slot.state == ProviderState.error:
                self._set_state(slot, ProviderState.recovering)
            self._set_state(slot, ProviderState.ready)
            if self._streaming and slot.kind == self._current:
                self._set_state(slot, ProviderState.streaming)
        slot.reset_failures()
        slot.last_error = None
        self.tracker.record_success(slot.kind.value)

    def _fallback_target(self, slot: ProviderSlot, err: ProviderError) -> ProviderSlot | None:
        cfg = self._config
        if not cfg.auto_switch or cfg.fallback_provider is None:
            return None
        if cfg.fallback_provider == slot.kind:
            return None
        if not err.fatal and slot.consecutive_failures < max(1, cfg.retry_attempts):
            return None
        target = self._slots.get(cfg.fallback_provider)
        if target is None or not target.usable:
            return None
        return target

    async def _fallback(self, failed: ProviderSlot, target: ProviderSlot) -> None:
        async with self._switch_lock:
            # другой вызов мог уже переключить
            if self._current != failed.kind:
                return
            log.warning(
                "provider_fallback",
                extra={
                    "payload": {
                        "source": failed.kind.value,
                        "target": target.kind.value,
                        "failures": failed.consecutive_failures,
                    }
                },
            )
            await self._switch_locked(failed, target, "fallback")

    async def _call(
        self, slot: ProviderSlot, chunk: AudioChunk, options: TranscriptionOptions
    ) -> TranscriptionResult:
        timeout_s = self._config.connection_timeout / 1000.0
        provider = slot.kind.value

        # в полёте считаем и ожидающих семафор: переключение дожидается всех
        slot.in_flight += 1
        slot.idle.clear()
        try:
            await slot.semaphore.acquire()
        except BaseException:
            self._leave(slot)
            raise

        PROVIDER_INFLIGHT.labels(provider=provider).inc()
        started = monotonic()
        worker = asyncio.ensure_future(asyncio.to_thread(slot.adapter.transcribe, chunk, options))

        def _worker_done(fut: asyncio.Future) -> None:
            # слот держим до реального завершения потока, а не до таймаута вызывающего
            PROVIDER_INFLIGHT.labels(provider=provider).dec()
            TRANSCRIBE_LATENCY_MS.labels(provider=provider).observe((monotonic() - started) * 1000)
            slot.semaphore.release()
            self._leave(slot)
            if not fut.cancelled():
                fut.exception()

        worker.add_done_callback(_worker_done)

        try:
            result = await asyncio.wait_for(asyncio.shield(worker), timeout=timeout_s)
        except TimeoutError as e:
            TRANSCRIBE_REQUESTS_TOTAL.labels(provider=provider, result="timeout").inc()
            log.warning(
                "transcribe_timeout",
                extra={"payload": {"provider": provider, "seq": chunk.sequence_id}},
            )
            raise ProviderError(
                "timeout",
                "Провайдер не ответил за connection_timeout",
                {"seq": chunk.sequence_id, "timeout_ms": self._config.connection_timeout},
                provider=provider,
            ) from e
        except ProviderError:
            TRANSCRIBE_REQUESTS_TOTAL.labels(provider=provider, result="failed").inc()
            raise
        TRANSCRIBE_REQUESTS_TOTAL.labels(provider=provider, result="ok").inc()
        return result

    @staticmethod
    def _leave(slot: ProviderSlot) -> None:
        slot.in_flight -= 1
        if slot.in_flight == 0:
            slot.idle.set()

    async def transcribe(
        self, chunk: AudioChunk, options: TranscriptionOptions | None = None
    ) -> TranscriptionResult:
        """
        Распознаёт чанк текущим провайдером.

        Политика:
        - отказ → счётчик последовательных отказов провайдера (окно connection_timeout)
        - счётчик достиг retry_attempts, auto_switch и fallback готов → переключение
          и повтор на fallback (не больше одного fallback за вызов)
        - иначе повтор через retry_delay, пока попыток не больше retry_attempts
        - фатальная ошибка провайдера → FAILED, без повторов
        """
        opts = options or TranscriptionOptions()
        attempts = 0
        fell_back = False

        while True:
            if not self._streaming:
                err = NotStreamingError(details={"seq": chunk.sequence_id})
                self._capture(err, provider=None, operation="transcribe")
                raise err

            await self._no_switch.wait()
            slot = self._slots[self._current]
            call_started = monotonic()

            try:
                if slot.state == ProviderState.failed:
                    raise ProviderError(
                        "unavailable",
                        "Провайдер в состоянии FAILED",
                        {"last_error": slot.last_error},
                        provider=slot.kind.value,
                        fatal=True,
                    )
                if slot.state == ProviderState.error:
                    self._set_state(slot, ProviderState.recovering)
                result = await self._call(slot, chunk, opts)
            except ProviderError as e:
                attempts += 1
                self._note_failure(slot, e, call_started)
                self._capture(e, provider=slot.kind.value, operation="transcribe")

                target = None if fell_back else self._fallback_target(slot, e)
                if target is not None:
                    await self._fallback(slot, target)
                    fell_back = True
                    attempts = 0
                    continue

                if e.fatal or attempts > self._config.retry_attempts:
                    raise
                log.info(
                    "transcribe_retry",
                    extra={
                        "payload": {
                            "provider": slot.kind.value,
                            "seq": chunk.sequence_id,
                            "attempt": attempts,
                            "kind": e.kind.value,
                        }
                    },
                )
                delay_ms = self._config.retry_delay_for(attempts)
                if delay_ms:
                    await asyncio.sleep(delay_ms / 1000.0)
                continue

            self._note_success(slot)
            return result

    def _status_of(self, slot: ProviderSlot) -> ProviderStatus:
        for st in self.get_provider_status():
            if st.type == slot.kind:
                return st
        return slot.adapter.get_status()
