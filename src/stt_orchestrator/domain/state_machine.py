"""
Машина состояний провайдера STT.

Назначение:
- централизованное управление переходами состояний провайдера
- предсказуемое поведение при ошибках
- основа для ретраев и fallback в ProviderManager

Схема:
UNINITIALIZED → INITIALIZING → READY → STREAMING → {ERROR → RECOVERING → READY | FAILED} → STOPPED
- STOPPED → STREAMING при повторной активации провайдера
- FAILED терминально до явной переинициализации (FAILED → INITIALIZING)
"""

from __future__ import annotations

from dataclasses import dataclass

from .enums import ProviderState


# =============================================================================
# РЕЗУЛЬТАТ ПЕРЕХОДА
# =============================================================================
@dataclass
class TransitionResult:
    ok: bool
    state: ProviderState
    reason: str | None = None


# =============================================================================
# ДОПУСТИМЫЕ ПЕРЕХОДЫ
# =============================================================================
_ALLOWED: dict[ProviderState, frozenset[ProviderState]] = {
    ProviderState.uninitialized: frozenset({ProviderState.initializing}),
    ProviderState.initializing: frozenset({ProviderState.ready, ProviderState.failed}),
    ProviderState.ready: frozenset(
        {ProviderState.streaming, ProviderState.stopped, ProviderState.error}
    ),
    ProviderState.streaming: frozenset(
        {ProviderState.error, ProviderState.stopped, ProviderState.ready}
    ),
    ProviderState.error: frozenset(
        {ProviderState.recovering, ProviderState.failed, ProviderState.stopped}
    ),
    ProviderState.recovering: frozenset(
        {ProviderState.ready, ProviderState.error, ProviderState.failed}
    ),
    ProviderState.failed: frozenset({ProviderState.initializing, ProviderState.stopped}),
    ProviderState.stopped: frozenset(
        {ProviderState.streaming, ProviderState.initializing, ProviderState.error}
    ),
}

# Провайдер в этих состояниях считается инициализированным
INITIALIZED_STATES = frozenset(
    {
        ProviderState.ready,
        ProviderState.streaming,
        ProviderState.error,
        ProviderState.recovering,
        ProviderState.stopped,
    }
)


def allowed_targets(current: ProviderState) -> frozenset[ProviderState]:
    return _ALLOWED.get(current, frozenset())


# =============================================================================
# ПЕРЕХОД СОСТОЯНИЙ
# =============================================================================
def transition(current: ProviderState, target: ProviderState) -> TransitionResult:
    """
    Правила перехода:
    - target == current → без изменений (ok)
    - target в таблице допустимых → переход
    - иначе → отказ, состояние остаётся прежним
    """
    if target == current:
        return TransitionResult(ok=True, state=current)

    if target in allowed_targets(current):
        return TransitionResult(ok=True, state=target)

    return TransitionResult(
        ok=False,
        state=current,
        reason=f"transition_not_allowed:{current.value}->{target.value}",
    )


def is_initialized(state: ProviderState) -> bool:
    return state in INITIALIZED_STATES
