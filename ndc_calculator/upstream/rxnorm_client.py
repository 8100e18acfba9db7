# ndc_calculator/upstream/rxnorm_client.py
from __future__ import annotations

import logging
from typing import Any, Optional, Tuple

from ndc_calculator.config import AppConfig, config
from ndc_calculator.data_models import CodeStatus, IdentityResult, NormalizedDrug, RequestContext
from ndc_calculator.errors import AppError
from ndc_calculator.resilience.cache import ResilientCache
from ndc_calculator.resilience.rate_limiter import SlidingWindowRateLimiter
from ndc_calculator.upstream.base import UpstreamClient
from ndc_calculator.upstream.ndc import looks_like_ndc, normalize_ndc

logger = logging.getLogger(__name__)

# Статусы NDC в RxNav ndcstatus
_ACTIVE_STATUSES = {"ACTIVE"}
_INACTIVE_STATUSES = {"OBSOLETE", "ALIEN"}


def _parse_rxcui(data: Any) -> Optional[str]:
    ids = ((data or {}).get("idGroup") or {}).get("rxnormId") or []
    return str(ids[0]) if ids else None


def _parse_approximate(data: Any) -> Optional[str]:
    candidates = ((data or {}).get("approximateGroup") or {}).get("candidate") or []
    scored = []
    for candidate in candidates:
        if not isinstance(candidate, dict) or not candidate.get("rxcui"):
            continue
        try:
            score = float(candidate.get("score") or 0)
        except (TypeError, ValueError):
            score = 0.0
        scored.append((score, str(candidate["rxcui"])))
    if not scored:
        return None
    # Лучший кандидат с максимальным score
    scored.sort(key=lambda item: item[0], reverse=True)
    return scored[0][1]


def _parse_ndcs(data: Any) -> Tuple[str, ...]:
    ndc_list = (((data or {}).get("ndcGroup") or {}).get("ndcList") or {}).get("ndc") or []
    seen = []
    for raw in ndc_list:
        ndc = normalize_ndc(str(raw))
        if ndc and ndc not in seen:
            seen.append(ndc)
    return tuple(seen)


def _parse_ndc_status(data: Any) -> Optional[Tuple[Optional[str], Optional[str], Optional[bool]]]:
    status = (data or {}).get("ndcStatus") or {}
    if not status:
        return None
    raw_status = str(status.get("status") or "").upper()
    if raw_status in _ACTIVE_STATUSES:
        active: Optional[bool] = True
    elif raw_status in _INACTIVE_STATUSES:
        active = False
    else:
        active = None
    rxcui = status.get("rxcui") or None
    if rxcui is None and active is None:
        return None
    return rxcui, status.get("conceptName") or None, active


def _parse_display_name(data: Any) -> Optional[str]:
    properties = (data or {}).get("properties") or {}
    return properties.get("name") or None


class RxNormClient(UpstreamClient):
    """
    Клиент RxNav (RxNorm): название/NDC -> RxCUI -> список NDC.

    Все операции идут через общую дисциплину UpstreamClient
    (кэш 1 час, 10 запросов/сек, один повтор, отрицательный кэш на 4xx).
    """

    source_label = "RxNorm"

    def __init__(
        self,
        cache: Optional[ResilientCache[Any]] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        app_config: Optional[AppConfig] = None,
    ) -> None:
        app_config = app_config or config
        super().__init__(app_config.rxnorm, cache=cache, rate_limiter=rate_limiter, app_config=app_config)

    async def find_rxcui_by_string(self, name: str, ctx: Optional[RequestContext] = None) -> Optional[str]:
        return await self._cached_call(
            "find_rxcui_by_string",
            name,
            "rxcui.json",
            {"name": name},
            _parse_rxcui,
            None,
            ctx,
        )

    async def approximate_term(self, term: str, ctx: Optional[RequestContext] = None) -> Optional[str]:
        return await self._cached_call(
            "approximate_term",
            term,
            "approximateTerm.json",
            {"term": term, "maxEntries": 5},
            _parse_approximate,
            None,
            ctx,
        )

    async def get_ndcs_by_rxcui(self, rxcui: str, ctx: Optional[RequestContext] = None) -> Tuple[str, ...]:
        return await self._cached_call(
            "get_ndcs_by_rxcui",
            rxcui,
            f"rxcui/{rxcui}/ndcs.json",
            None,
            _parse_ndcs,
            (),
            ctx,
        )

    async def get_ndc_status(
        self, ndc: str, ctx: Optional[RequestContext] = None
    ) -> Optional[Tuple[Optional[str], Optional[str], Optional[bool]]]:
        """
        (rxcui, concept name, active) для кода или None, если RxNorm его не знает.
        """
        ndc11 = normalize_ndc(ndc)
        return await self._cached_call(
            "get_ndc_status",
            ndc11,
            "ndcstatus.json",
            {"ndc": ndc11},
            _parse_ndc_status,
            None,
            ctx,
        )

    async def get_display_name(self, rxcui: str, ctx: Optional[RequestContext] = None) -> Optional[str]:
        return await self._cached_call(
            "get_display_name",
            rxcui,
            f"rxcui/{rxcui}/properties.json",
            None,
            _parse_display_name,
            None,
            ctx,
        )

    async def resolve(self, drug_input: str, ctx: Optional[RequestContext] = None) -> IdentityResult:
        """
        Ветка нормализации целиком.

        Ошибка первого шага (поиск RxCUI) пробрасывается: это отказ источника.
        Ошибки второстепенных шагов (список NDC, отображаемое имя) поглощаются
        с заметкой в контексте, концепт при этом уже найден.
        """
        if looks_like_ndc(drug_input):
            return await self._resolve_code(drug_input, ctx)

        rxcui = await self.find_rxcui_by_string(drug_input, ctx)
        if rxcui is None:
            logger.info("RxNorm exact match not found, trying approximate term: %s", drug_input)
            rxcui = await self.approximate_term(drug_input, ctx)
        if rxcui is None:
            logger.warning("RxNorm could not resolve drug: %s", drug_input)
            return IdentityResult(drug=None)

        name = drug_input
        try:
            name = await self.get_display_name(rxcui, ctx) or drug_input
        except AppError as exc:
            logger.warning("RxNorm display name lookup failed for %s: %s", rxcui, exc)

        try:
            ndcs = await self.get_ndcs_by_rxcui(rxcui, ctx)
        except AppError as exc:
            logger.warning("RxNorm NDC list lookup failed for %s: %s", rxcui, exc)
            if ctx is not None:
                ctx.add_note("RxNorm NDC list unavailable - using package data only")
            ndcs = ()

        logger.info("RxNorm resolved %s -> %s (%s NDCs)", drug_input, rxcui, len(ndcs))
        return IdentityResult(
            drug=NormalizedDrug(rxcui=rxcui, name=name),
            codes=tuple(CodeStatus(ndc=ndc, active=None) for ndc in ndcs),
        )

    async def _resolve_code(self, ndc: str, ctx: Optional[RequestContext]) -> IdentityResult:
        ndc11 = normalize_ndc(ndc)
        status = await self.get_ndc_status(ndc11, ctx)
        if status is None:
            logger.warning("RxNorm does not know NDC %s", ndc11)
            return IdentityResult(drug=None)

        rxcui, concept_name, active = status
        drug = NormalizedDrug(rxcui=rxcui, name=concept_name or ndc11) if rxcui else None
        return IdentityResult(drug=drug, codes=(CodeStatus(ndc=ndc11, active=active),))
