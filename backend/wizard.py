# backend/wizard.py — Multi-step calculator session
# selecting_concerns -> entering_profile -> viewing_gated_results -> viewing_full_results
# Holds one user's state; sequencing and guards only. The estimator and the
# lead-capture call are the only side effects and live on the transitions.

import enum
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import engine
import validator
from schemas import ProfileIn, ValidationOutcomeOut, ValidationStatusEnum, ContactIn, CALCULATION_SCHEMA_VERSION

logger = logging.getLogger(__name__)

LeadCapture = Callable[[ContactIn, Dict[str, Any]], Awaitable[Any]]

EMPTY_SELECTION_NOTICE = "Select at least one area to continue."


class WizardStep(str, enum.Enum):
    selecting_concerns = "selecting_concerns"
    entering_profile = "entering_profile"
    viewing_gated_results = "viewing_gated_results"
    viewing_full_results = "viewing_full_results"


class WizardError(Exception):
    """Transition not allowed from the current step."""


class WizardSession:

    def __init__(self, now: Optional[float] = None):
        self.last_seen = time.monotonic() if now is None else now
        self._clear()

    def touch(self, now: Optional[float] = None):
        self.last_seen = time.monotonic() if now is None else now

    def _clear(self):
        self.state = WizardStep.selecting_concerns
        self.concerns: Set[str] = set()
        self.profile: Optional[ProfileIn] = None
        self.result: Optional[Dict[str, Any]] = None
        self.errors: Dict[str, str] = {}
        self.warnings: Dict[str, str] = {}
        self.notice: Optional[str] = None
        self.focus_field: Optional[str] = None
        self.proposed_fallback: Optional[ProfileIn] = None
        self.lead_captured = False

    def _require(self, *states: WizardStep):
        if self.state not in states:
            allowed = ", ".join(s.value for s in states)
            raise WizardError(f"Not allowed while {self.state.value} (needs {allowed}).")

    # -----------------------------------------------------------------------
    # CONCERN SELECTION
    # -----------------------------------------------------------------------
    def toggle(self, concern: Any) -> Set[str]:
        self._require(WizardStep.selecting_concerns)
        name = str(getattr(concern, "value", concern))
        if name not in engine.CONCERNS:
            raise WizardError(f"Unknown concern: {name}")
        if name in self.concerns:
            self.concerns.discard(name)
        else:
            self.concerns.add(name)
        self.notice = None
        self.result = None  # stale once the selection changes
        return self.concerns

    def next(self) -> bool:
        """Advance to profile entry; an empty selection stays put and sets a notice."""
        self._require(WizardStep.selecting_concerns)
        if not self.concerns:
            self.notice = EMPTY_SELECTION_NOTICE
            return False
        self.notice = None
        self.state = WizardStep.entering_profile
        return True

    def back(self):
        self._require(WizardStep.entering_profile)
        self.proposed_fallback = None
        self.state = WizardStep.selecting_concerns

    # -----------------------------------------------------------------------
    # PROFILE
    # -----------------------------------------------------------------------
    def submit(self, profile: ProfileIn) -> ValidationOutcomeOut:
        self._require(WizardStep.entering_profile)
        self.profile = profile
        outcome = validator.validate(profile, self.concerns)
        self.errors = dict(outcome.errors)
        self.warnings = dict(outcome.warnings)
        self.focus_field = next(iter(outcome.errors), None)
        self.proposed_fallback = outcome.proposed_fallback

        if outcome.status == ValidationStatusEnum.valid:
            self._run_estimate(validator.effective_profile(profile))
        else:
            # the previous result belongs to a profile that no longer exists
            self.result = None
            self.lead_captured = False
        return outcome

    def confirm_fallback(self):
        """Accept the default mix offered for an edited mix that did not sum to 100."""
        self._require(WizardStep.entering_profile)
        if self.proposed_fallback is None:
            raise WizardError("No fallback mix is pending.")
        fallback = self.proposed_fallback
        self.proposed_fallback = None
        self.profile = fallback
        self._run_estimate(fallback)

    def _run_estimate(self, profile: ProfileIn):
        self.profile = profile
        self.result = engine.estimate(profile, self.concerns)
        self.errors = {}
        self.focus_field = None
        self.lead_captured = False
        self.state = WizardStep.viewing_gated_results

    def adjust_inputs(self):
        self._require(WizardStep.viewing_gated_results, WizardStep.viewing_full_results)
        self.state = WizardStep.entering_profile

    # -----------------------------------------------------------------------
    # LEAD GATE
    # -----------------------------------------------------------------------
    def calculation_payload(self) -> Dict[str, Any]:
        return {
            "schema_version": CALCULATION_SCHEMA_VERSION,
            "concerns": engine.normalize_concerns(self.concerns),
            "profile": self.profile.model_dump() if self.profile else None,
            "result": self.result,
        }

    async def submit_lead(self, contact: ContactIn, capture: LeadCapture) -> bool:
        """
        Hand the contact + calculation to the capture collaborator, then unlock
        full results whatever it returned. Returns whether capture succeeded.
        """
        self._require(WizardStep.viewing_gated_results)
        ok = True
        try:
            await capture(contact, self.calculation_payload())
        except Exception as exc:
            ok = False
            logger.warning("Lead capture failed for %s: %s", contact.email, exc)
        self.lead_captured = ok
        self.state = WizardStep.viewing_full_results
        return ok

    def reset(self):
        self._clear()

    # -----------------------------------------------------------------------
    # VIEW
    # -----------------------------------------------------------------------
    def teaser(self) -> Optional[Dict[str, Any]]:
        """What the gated view may show: the headline and which buckets exist."""
        if self.result is None:
            return None
        return {
            "schema_version": self.result["schema_version"],
            "concerns": self.result["concerns"],
            "grand_total": self.result["grand_total"],
        }

    def snapshot(self) -> Dict[str, Any]:
        if self.state == WizardStep.viewing_full_results:
            result = self.result
        else:
            result = self.teaser()
        return {
            "state": self.state.value,
            "concerns": engine.normalize_concerns(self.concerns),
            "profile": self.profile,
            "result": result,
            "errors": self.errors,
            "warnings": self.warnings,
            "notice": self.notice,
            "focus_field": self.focus_field,
            "proposed_fallback": self.proposed_fallback,
            "lead_captured": self.lead_captured,
        }
