# ndc_calculator/pipeline/compute_service.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

from ndc_calculator.calculator.dosage_form import detect_dosage_form
from ndc_calculator.calculator.quantity import MAX_DAYS_SUPPLY, calculate_quantity
from ndc_calculator.config import AppConfig, config
from ndc_calculator.data_models import (
    CodeStatus,
    ComputeFlags,
    ComputeRequest,
    ComputeResult,
    IdentityResult,
    NormalizedDrug,
    PackageRecord,
    ParsedDirective,
    RequestContext,
)
from ndc_calculator.directive.parser import PARSE_GUIDANCE, DirectiveParser, create_directive_interpreter
from ndc_calculator.errors import AppError, DependencyError, InternalError, ParseError, ValidationError
from ndc_calculator.selection.package_selector import select_packages
from ndc_calculator.upstream.fda_client import FDAClient
from ndc_calculator.upstream.ndc import looks_like_ndc
from ndc_calculator.upstream.rxnorm_client import RxNormClient

logger = logging.getLogger(__name__)

BranchResult = Union[BaseException, object]


@dataclass
class ReconciledData:
    """
    Сведённые данные двух источников: каталог упаковок (openFDA главнее)
    и флаги расхождений.
    """
    drug: NormalizedDrug
    catalog: Dict[str, PackageRecord]
    inactive_ndcs: List[str] = field(default_factory=list)
    mismatch: bool = False
    notes: List[str] = field(default_factory=list)


class ComputeService:
    """
    Конвейер расчёта.

    Отвечает за:
    - параллельный запуск трёх веток (RxNorm, openFDA, разбор SIG);
    - сведение данных источников и флаги inactive/mismatch;
    - расчёт количества и подбор упаковки;
    - перевод отказов в ParseError / DependencyError / InternalError.
    """

    def __init__(
        self,
        rxnorm_client: Optional[RxNormClient] = None,
        fda_client: Optional[FDAClient] = None,
        directive_parser: Optional[DirectiveParser] = None,
        app_config: Optional[AppConfig] = None,
    ) -> None:
        self._config = app_config or config
        self._rxnorm = rxnorm_client or RxNormClient(app_config=self._config)
        self._fda = fda_client or FDAClient(app_config=self._config)
        self._parser = directive_parser or DirectiveParser(
            create_directive_interpreter(self._config.llm), enabled=self._config.llm.enabled
        )

    async def compute(self, request: ComputeRequest, correlation_id: Optional[str] = None) -> ComputeResult:
        """
        Полный расчёт по одному запросу в пределах общего бюджета времени.
        """
        self._validate(request)
        ctx = RequestContext(correlation_id=correlation_id)
        timeout = self._config.pipeline.total_timeout_seconds

        try:
            return await asyncio.wait_for(self._compute(request, ctx), timeout=timeout)
        except asyncio.TimeoutError as exc:
            logger.error("Compute exceeded time budget of %ss (correlation_id=%s)", timeout, correlation_id)
            raise DependencyError(
                "Request timed out while waiting for external data",
                detail=f"The computation did not finish within {timeout:g} seconds. Please try again later.",
                retry_after_seconds=self._config.pipeline.dependency_retry_after_seconds,
            ) from exc

    def _validate(self, request: ComputeRequest) -> None:
        field_errors = []
        if not (request.drug_input or "").strip():
            field_errors.append({"field": "drug_input", "message": "must not be empty"})
        if not (request.sig or "").strip():
            field_errors.append({"field": "sig", "message": "must not be empty"})
        days = request.days_supply
        if isinstance(days, bool) or not isinstance(days, int) or not 1 <= days <= MAX_DAYS_SUPPLY:
            field_errors.append({"field": "days_supply", "message": f"must be an integer between 1 and {MAX_DAYS_SUPPLY}"})
        if field_errors:
            raise ValidationError("Invalid compute request", field_errors=field_errors)

    async def _compute(self, request: ComputeRequest, ctx: RequestContext) -> ComputeResult:
        identity, packages, directive = await asyncio.gather(
            self._rxnorm.resolve(request.drug_input, ctx),
            self._fetch_packages(request.drug_input, ctx),
            self._parser.parse(request.sig),
            return_exceptions=True,
        )

        # Неразобранный SIG важнее отказа источников
        directive = self._require_directive(directive)

        rxnorm_failed = self._branch_failed("RxNorm", identity)
        fda_failed = self._branch_failed("FDA", packages)

        if rxnorm_failed and fda_failed:
            logger.error("Both RxNorm and FDA API calls failed for %s", request.drug_input)
            raise DependencyError(
                "Failed to retrieve drug information from external APIs",
                detail="Both RxNorm and FDA APIs failed. Please try again later.",
                retry_after_seconds=self._retry_after(identity, packages),
            )

        reconciled = await self._reconcile(
            request.drug_input,
            None if rxnorm_failed else identity,
            None if fda_failed else packages,
            ctx,
        )
        if rxnorm_failed:
            reconciled.notes.insert(0, "RxNorm API call failed - using FDA data only")
        if fda_failed:
            reconciled.notes.insert(0, "FDA API call failed - using RxNorm data only")

        try:
            return self._assemble(request, directive, reconciled, ctx)
        except AppError:
            raise
        except Exception as exc:
            logger.exception("Unexpected failure while computing quantity or selecting packages")
            raise InternalError(
                "Internal error while computing the dispensing quantity",
                detail=str(exc) or type(exc).__name__,
            ) from exc

    async def _fetch_packages(self, drug_input: str, ctx: RequestContext) -> Tuple[PackageRecord, ...]:
        if looks_like_ndc(drug_input):
            record = await self._fda.lookup_by_ndc(drug_input, ctx)
            return (record,) if record is not None else ()
        return await self._fda.search_by_name(drug_input, ctx)

    def _require_directive(self, directive: BranchResult) -> ParsedDirective:
        if isinstance(directive, BaseException):
            logger.error("Directive parser raised unexpectedly: %r", directive)
            raise InternalError("Internal error while parsing directions") from directive
        if not directive.parsed:
            raise ParseError(
                "Unable to parse prescription directions (SIG). Please check the format and try again.",
                detail=f"{PARSE_GUIDANCE} ({directive.reason})" if directive.reason else PARSE_GUIDANCE,
            )
        return directive

    def _branch_failed(self, label: str, outcome: BranchResult) -> bool:
        if not isinstance(outcome, BaseException):
            return False
        if isinstance(outcome, AppError):
            logger.warning("%s lookup failed: %s", label, outcome.message)
        else:
            logger.error("%s lookup failed unexpectedly: %r", label, outcome)
        return True

    def _retry_after(self, *failures: BranchResult) -> float:
        hints = [self._config.pipeline.dependency_retry_after_seconds]
        for failure in failures:
            if isinstance(failure, AppError) and failure.retry_after_seconds:
                hints.append(failure.retry_after_seconds)
        return max(hints)

    async def _reconcile(
        self,
        drug_input: str,
        identity: Optional[IdentityResult],
        packages: Optional[Tuple[PackageRecord, ...]],
        ctx: RequestContext,
    ) -> ReconciledData:
        """
        Сводит данные источников.

        openFDA главнее: его активность и размер упаковки побеждают.
        NDC из RxNorm, которых нет в выдаче openFDA, проверяются поштучно.
        """
        drug = identity.drug if identity is not None and identity.drug is not None else None
        reconciled = ReconciledData(
            drug=drug or NormalizedDrug(rxcui="", name=drug_input),
            catalog={record.ndc: record for record in packages or ()},
        )
        if identity is not None and drug is None:
            reconciled.notes.append("Drug could not be normalized by RxNorm")

        rx_codes = identity.codes if identity is not None else ()
        searched = set(reconciled.catalog)
        rx_only = [code for code in rx_codes if code.ndc not in reconciled.catalog]

        not_found: List[str] = []
        if packages is not None and rx_only:
            not_found = await self._verify_codes(rx_only, reconciled, ctx)

        # Пустой ответ одного источника при кодах в другом тоже расхождение
        if identity is not None and packages is not None:
            rx_set = {code.ndc for code in rx_codes}
            fda_only = searched - rx_set
            status_conflicts = [
                code.ndc
                for code in rx_codes
                if code.active is not None
                and code.ndc in reconciled.catalog
                and reconciled.catalog[code.ndc].active != code.active
            ]
            reconciled.mismatch = bool(not_found or fda_only or status_conflicts)
            if reconciled.mismatch:
                logger.warning(
                    "Data mismatch between RxNorm and FDA: rxnorm_only=%s fda_only=%s status_conflicts=%s",
                    len(not_found),
                    len(fda_only),
                    len(status_conflicts),
                )

        inactive = [record.ndc for record in reconciled.catalog.values() if not record.active]
        inactive += [
            code.ndc for code in rx_codes if code.active is False and code.ndc not in reconciled.catalog
        ]
        reconciled.inactive_ndcs = inactive

        if packages is not None and not reconciled.catalog:
            reconciled.notes.append("No packages found for this drug in FDA data")

        logger.info(
            "Data merged: rxnorm_codes=%s fda_packages=%s merged=%s",
            len(rx_codes),
            len(searched),
            len(reconciled.catalog),
        )
        return reconciled

    async def _verify_codes(
        self, rx_only: List[CodeStatus], reconciled: ReconciledData, ctx: RequestContext
    ) -> List[str]:
        """
        Поштучно ищет в openFDA коды, которые знает только RxNorm.
        Возвращает коды, которых в openFDA нет. Неудавшиеся проверки
        неактивными не считаются, только попадают в заметку.
        """
        limit = self._config.pipeline.max_code_verifications
        to_verify = rx_only[:limit]
        skipped = len(rx_only) - len(to_verify)

        logger.info("Looking up %s RxNorm NDCs in FDA API", len(to_verify))
        results = await asyncio.gather(
            *(self._fda.lookup_by_ndc(code.ndc, ctx) for code in to_verify),
            return_exceptions=True,
        )

        not_found: List[str] = []
        unverified = 0
        for code, result in zip(to_verify, results):
            if isinstance(result, BaseException):
                logger.warning("FDA lookup failed for NDC %s: %s", code.ndc, result)
                unverified += 1
            elif result is None:
                not_found.append(code.ndc)
            else:
                reconciled.catalog.setdefault(result.ndc, result)

        if unverified:
            reconciled.notes.append(f"{unverified} RxNorm NDC(s) could not be verified against FDA data")
        if skipped > 0:
            reconciled.notes.append(f"{skipped} RxNorm NDC(s) not verified (verification limit reached)")
        return not_found

    def _assemble(
        self,
        request: ComputeRequest,
        directive: ParsedDirective,
        reconciled: ReconciledData,
        ctx: RequestContext,
    ) -> ComputeResult:
        records = list(reconciled.catalog.values())
        dosage_form = detect_dosage_form(request.drug_input, records, directive.dose_unit)
        quantity = calculate_quantity(
            directive,
            request.days_supply,
            dosage_form=dosage_form,
            unit_override=request.quantity_unit_override,
        )
        selection = select_packages(
            quantity.total_qty,
            records,
            preferred_ndcs=request.preferred_ndcs,
            selection_config=self._config.selection,
        )

        flags = ComputeFlags(inactive_ndcs=list(reconciled.inactive_ndcs), mismatch=reconciled.mismatch)
        for note in [*ctx.notes, *reconciled.notes, *selection.notes]:
            if note not in flags.notes:
                flags.notes.append(note)

        logger.info(
            "Compute completed: total=%s %s chosen=%s notes=%s",
            quantity.total_qty,
            quantity.dose_unit,
            selection.chosen.ndc if selection.chosen else None,
            len(flags.notes),
        )
        return ComputeResult(
            drug=reconciled.drug,
            quantity=quantity,
            directive=directive,
            selection=selection,
            flags=flags,
        )
