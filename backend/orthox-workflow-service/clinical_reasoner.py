"""
Clinical reasoning capability for the diagnosis hand-off pipeline.

Two routes, picked per call from configuration:
- medgemma_endpoint: specialised reasoning backend over HTTP
- gemini_fallback: general-purpose Gemini call framed as the reasoning model

The fallback route is taken when no endpoint is configured or when the
configured endpoint is unreachable. It is logged, reported on the result,
and never raised to the caller.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from capabilities import DEFAULT_VISION_MODEL, GeminiGateway
from env_loader import env_float, env_str
from errors import CapabilityBadResponse, CapabilityUnavailable
from models import ReasoningResult

logger = logging.getLogger(__name__)

ROUTE_ENDPOINT = "medgemma_endpoint"
ROUTE_GEMINI_FALLBACK = "gemini_fallback"


class ClinicalReasoner:
    name = "ClinicalReasoner"

    def __init__(
        self,
        gateway: GeminiGateway,
        endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        fallback_model: Optional[str] = None,
    ) -> None:
        self.gateway = gateway
        self.endpoint = (endpoint if endpoint is not None else env_str("ORTHOX_MEDGEMMA_ENDPOINT")).strip()
        self.api_key = (api_key if api_key is not None else env_str("ORTHOX_MEDGEMMA_API_KEY")).strip()
        self.timeout_seconds = max(
            1.0,
            timeout_seconds
            if timeout_seconds is not None
            else env_float("ORTHOX_MEDGEMMA_TIMEOUT_SECONDS", 60.0),
        )
        self.fallback_model = fallback_model or env_str("ORTHOX_VISION_MODEL", DEFAULT_VISION_MODEL)

    @property
    def mode(self) -> str:
        return ROUTE_ENDPOINT if self.endpoint else ROUTE_GEMINI_FALLBACK

    def fallback_instruction(self, vision_findings: str, patient_context: str) -> str:
        return (
            f"Patient Context: {patient_context}. Vision Data: {vision_findings}.\n"
            "Perform high-fidelity clinical reasoning. Assess risks, identify red flags, and "
            "suggest next workflow steps. Act as MedGemma, a specialized medical fine-tuned model."
        )

    def reason(self, vision_findings: str, patient_context: str) -> ReasoningResult:
        if not self.endpoint:
            logger.warning(
                "MedGemma endpoint not configured; using %s route (%s).",
                ROUTE_GEMINI_FALLBACK,
                self.fallback_model,
            )
            return ReasoningResult(
                text=self._reason_via_gemini(vision_findings, patient_context),
                route=ROUTE_GEMINI_FALLBACK,
                fallback_reason="endpoint not configured",
            )

        try:
            text = self._reason_via_endpoint(vision_findings, patient_context)
        except CapabilityUnavailable as exc:
            logger.warning(
                "MedGemma endpoint unavailable (%s); using %s route.",
                exc.message,
                ROUTE_GEMINI_FALLBACK,
            )
            return ReasoningResult(
                text=self._reason_via_gemini(vision_findings, patient_context),
                route=ROUTE_GEMINI_FALLBACK,
                fallback_reason=f"endpoint unavailable: {exc.message}",
            )
        logger.info("Clinical reasoning served by %s route.", ROUTE_ENDPOINT)
        return ReasoningResult(text=text, route=ROUTE_ENDPOINT)

    def _reason_via_endpoint(self, vision_findings: str, patient_context: str) -> str:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                resp = client.post(
                    self.endpoint,
                    json={"visionData": vision_findings, "context": patient_context},
                    headers=headers,
                )
                resp.raise_for_status()
                payload = resp.json()
        except httpx.HTTPError as exc:
            raise CapabilityUnavailable(str(exc) or exc.__class__.__name__, capability=self.name) from exc
        except ValueError as exc:
            raise CapabilityBadResponse(
                f"MedGemma endpoint returned non-JSON payload: {exc}",
                capability=self.name,
            ) from exc

        reasoning = payload.get("reasoning") if isinstance(payload, dict) else None
        if not isinstance(reasoning, str) or not reasoning.strip():
            raise CapabilityBadResponse(
                "MedGemma endpoint response is missing 'reasoning' text.",
                capability=self.name,
            )
        return reasoning.strip()

    def _reason_via_gemini(self, vision_findings: str, patient_context: str) -> str:
        response = self.gateway.generate(
            capability=self.name,
            model=self.fallback_model,
            contents=self.fallback_instruction(vision_findings, patient_context),
        )
        return self.gateway.response_text(response, self.name)
