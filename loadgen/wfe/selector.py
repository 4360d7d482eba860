from __future__ import annotations

import bisect
import itertools
import random
from dataclasses import dataclass
from typing import Callable, Sequence

from .registry import Registration

NEW_REGISTRATION = "new-registration"
NEW_AUTHORIZATION = "new-authorization"
NEW_CERTIFICATE = "new-certificate"
REVOKE_CERTIFICATE = "revoke-certificate"


@dataclass(frozen=True)
class DispatchContext:
    """What a single dispatch knows about the registration it drew."""

    has_registration: bool = False
    has_authorizations: bool = False
    has_certificates: bool = False

    @classmethod
    def for_registration(cls, registration: Registration | None) -> "DispatchContext":
        if registration is None:
            return cls()
        return cls(
            has_registration=True,
            has_authorizations=registration.has_authorizations(),
            has_certificates=registration.has_certificates(),
        )


@dataclass(frozen=True)
class ActionProfile:
    name: str
    weight: int
    eligible: Callable[[DispatchContext], bool]


def _always(context: DispatchContext) -> bool:
    return True


def _has_registration(context: DispatchContext) -> bool:
    return context.has_registration


def _has_authorizations(context: DispatchContext) -> bool:
    return context.has_authorizations


def _has_certificates(context: DispatchContext) -> bool:
    return context.has_certificates


DEFAULT_PROFILES: tuple[ActionProfile, ...] = (
    ActionProfile(NEW_REGISTRATION, 2, _always),
    ActionProfile(NEW_AUTHORIZATION, 4, _has_registration),
    ActionProfile(NEW_CERTIFICATE, 4, _has_authorizations),
    ActionProfile(REVOKE_CERTIFICATE, 3, _has_certificates),
)


class WeightedActionSelector:
    """Draws one eligible action with probability proportional to its weight.

    Eligible profiles are laid out as contiguous integer ranges over
    ``[0, total_weight)``; a uniform draw is mapped back to its owner by a
    binary search over the cumulative weights. Draws are independent.
    """

    def __init__(self, profiles: Sequence[ActionProfile] = DEFAULT_PROFILES) -> None:
        for profile in profiles:
            if profile.weight <= 0:
                raise ValueError(f"action {profile.name!r} must have a positive weight")
        self._profiles = tuple(profiles)

    @property
    def profiles(self) -> tuple[ActionProfile, ...]:
        return self._profiles

    def eligible(self, context: DispatchContext) -> list[ActionProfile]:
        return [profile for profile in self._profiles if profile.eligible(context)]

    def select(self, context: DispatchContext, rng: random.Random | None = None) -> ActionProfile:
        rng = rng if rng is not None else random
        eligible = self.eligible(context)
        if not eligible:
            raise ValueError("no action is eligible for this dispatch")

        bounds = list(itertools.accumulate(profile.weight for profile in eligible))
        draw = rng.randrange(bounds[-1])
        return eligible[bisect.bisect_right(bounds, draw)]


__all__ = [
    "ActionProfile",
    "DEFAULT_PROFILES",
    "DispatchContext",
    "NEW_AUTHORIZATION",
    "NEW_CERTIFICATE",
    "NEW_REGISTRATION",
    "REVOKE_CERTIFICATE",
    "WeightedActionSelector",
]
