# tests/test_compute_service.py
import asyncio
from typing import Dict, Optional, Sequence

import pytest

from ndc_calculator.data_models import (
    CodeStatus,
    ComputeRequest,
    IdentityResult,
    NormalizedDrug,
    PackageRecord,
    ParseMethod,
    RequestContext,
)
from ndc_calculator.directive.parser import DirectiveParser
from ndc_calculator.errors import DependencyError, InternalError, ParseError, ValidationError
from ndc_calculator.pipeline.compute_service import ComputeService
from ndc_calculator.upstream.ndc import normalize_ndc

AMOXICILLIN = NormalizedDrug(rxcui="308191", name="amoxicillin 500 MG Oral Capsule")


def capsule(ndc: str, size: int, active: bool = True) -> PackageRecord:
    return PackageRecord(ndc=ndc, pkg_size=size, active=active, dosage_form="CAPSULE", brand_name="Amoxicillin")


class FakeRxNorm:
    def __init__(self, identity: Optional[IdentityResult] = None, error: Optional[BaseException] = None) -> None:
        self.identity = identity
        self.error = error

    async def resolve(self, drug_input: str, ctx: RequestContext) -> IdentityResult:
        if self.error is not None:
            raise self.error
        return self.identity


class FakeFDA:
    def __init__(
        self,
        packages: Sequence[PackageRecord] = (),
        lookups: Optional[Dict[str, object]] = None,
        error: Optional[BaseException] = None,
        delay: float = 0.0,
        note: Optional[str] = None,
    ) -> None:
        self.packages = tuple(packages)
        self.lookups = lookups or {}
        self.error = error
        self.delay = delay
        self.note = note
        self.looked_up = []

    async def search_by_name(self, name: str, ctx: RequestContext):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.note:
            ctx.add_note(self.note)
        return self.packages

    async def lookup_by_ndc(self, ndc: str, ctx: RequestContext):
        self.looked_up.append(ndc)
        outcome = self.lookups.get(normalize_ndc(ndc))
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class RaisingParser:
    async def parse(self, sig: str):
        raise RuntimeError("boom")


def make_service(app_config, rxnorm, fda, parser=None) -> ComputeService:
    return ComputeService(
        rxnorm_client=rxnorm,
        fda_client=fda,
        directive_parser=parser or DirectiveParser(interpreter=None, enabled=False),
        app_config=app_config,
    )


def request(**overrides) -> ComputeRequest:
    values = dict(drug_input="amoxicillin", sig="Take 1 capsule by mouth twice daily", days_supply=30)
    values.update(overrides)
    return ComputeRequest(**values)


def amoxicillin_identity(*codes: CodeStatus) -> IdentityResult:
    return IdentityResult(
        drug=AMOXICILLIN,
        codes=codes or (CodeStatus("00093415301", None), CodeStatus("00093415305", None)),
    )


AMOXICILLIN_PACKAGES = (capsule("00093415301", 30), capsule("00093415305", 60))


@pytest.mark.asyncio
async def test_full_compute_result(app_config):
    service = make_service(app_config, FakeRxNorm(amoxicillin_identity()), FakeFDA(AMOXICILLIN_PACKAGES))

    result = await service.compute(request(), correlation_id="req-1")
    data = result.to_dict()

    assert data["rxnorm"] == {"rxcui": "308191", "name": "amoxicillin 500 MG Oral Capsule"}
    assert data["computed"]["dose_unit"] == "cap"
    assert data["computed"]["per_day"] == 2
    assert data["computed"]["total_qty"] == 60
    assert data["computed"]["dosage_form"] == "solid"
    assert data["computed"]["parse_method"] == "rules"
    assert data["computed"]["rounding"]["rule"] == "round_whole_unit"
    assert data["ndc_selection"]["chosen"]["ndc"] == "00093415305"
    assert data["ndc_selection"]["chosen"]["packs"] == 1
    assert data["ndc_selection"]["chosen"]["overfill"] == 0
    assert [alt["ndc"] for alt in data["ndc_selection"]["alternates"]] == ["00093415301"]
    assert data["flags"] == {"inactive_ndcs": [], "mismatch": False, "notes": [], "error_code": None}


@pytest.mark.asyncio
async def test_validation_runs_before_any_lookup(app_config):
    fda = FakeFDA(AMOXICILLIN_PACKAGES)
    service = make_service(app_config, FakeRxNorm(amoxicillin_identity()), fda)

    with pytest.raises(ValidationError) as exc_info:
        await service.compute(request(days_supply=0, sig=" "))

    fields = {item["field"] for item in exc_info.value.field_errors}
    assert fields == {"days_supply", "sig"}
    assert fda.looked_up == []


@pytest.mark.asyncio
async def test_both_sources_failing_is_dependency_error(app_config):
    service = make_service(
        app_config,
        FakeRxNorm(error=DependencyError("RxNorm down", retry_after_seconds=5)),
        FakeFDA(error=DependencyError("FDA down")),
    )

    with pytest.raises(DependencyError) as exc_info:
        await service.compute(request())

    assert exc_info.value.retry_after_seconds == 5
    assert exc_info.value.to_error_response()["error_code"] == "dependency_failure"


@pytest.mark.asyncio
async def test_retry_hint_has_floor(app_config):
    service = make_service(
        app_config,
        FakeRxNorm(error=DependencyError("RxNorm down", retry_after_seconds=0.5)),
        FakeFDA(error=RuntimeError("socket closed")),
    )

    with pytest.raises(DependencyError) as exc_info:
        await service.compute(request())

    assert exc_info.value.retry_after_seconds >= 2


@pytest.mark.asyncio
async def test_unparsed_sig_wins_over_dependency_failure(app_config):
    service = make_service(
        app_config,
        FakeRxNorm(error=DependencyError("RxNorm down")),
        FakeFDA(error=DependencyError("FDA down")),
    )

    with pytest.raises(ParseError) as exc_info:
        await service.compute(request(sig="use as directed"))

    assert exc_info.value.status_code == 422
    assert "Unable to parse SIG" in exc_info.value.detail


@pytest.mark.asyncio
async def test_parser_crash_is_internal_error(app_config):
    service = make_service(
        app_config, FakeRxNorm(amoxicillin_identity()), FakeFDA(AMOXICILLIN_PACKAGES), parser=RaisingParser()
    )

    with pytest.raises(InternalError):
        await service.compute(request())


@pytest.mark.asyncio
async def test_rxnorm_failure_degrades_to_fda_only(app_config):
    service = make_service(
        app_config, FakeRxNorm(error=DependencyError("RxNorm down")), FakeFDA(AMOXICILLIN_PACKAGES)
    )

    result = await service.compute(request())

    assert result.drug == NormalizedDrug(rxcui="", name="amoxicillin")
    assert result.selection.chosen.ndc == "00093415305"
    assert "RxNorm API call failed - using FDA data only" in result.flags.notes
    assert result.flags.mismatch is False


@pytest.mark.asyncio
async def test_fda_failure_degrades_to_rxnorm_only(app_config):
    service = make_service(
        app_config, FakeRxNorm(amoxicillin_identity()), FakeFDA(error=DependencyError("FDA down"))
    )

    result = await service.compute(request())

    assert result.quantity.total_qty == 60
    assert result.selection.chosen is None
    assert "FDA API call failed - using RxNorm data only" in result.flags.notes
    assert result.flags.mismatch is False


@pytest.mark.asyncio
async def test_source_notes_are_carried(app_config):
    stale = "FDA unavailable - using cached data (90 min old)"
    service = make_service(app_config, FakeRxNorm(amoxicillin_identity()), FakeFDA(AMOXICILLIN_PACKAGES, note=stale))

    result = await service.compute(request())

    assert result.flags.notes == [stale]


@pytest.mark.asyncio
async def test_unknown_drug_is_noted(app_config):
    service = make_service(app_config, FakeRxNorm(IdentityResult(drug=None)), FakeFDA(AMOXICILLIN_PACKAGES))

    result = await service.compute(request(drug_input="amoxicilin"))

    assert result.drug.name == "amoxicilin"
    assert "Drug could not be normalized by RxNorm" in result.flags.notes


@pytest.mark.asyncio
async def test_status_conflict_sets_mismatch(app_config):
    identity = amoxicillin_identity(CodeStatus("00093415301", None), CodeStatus("00093415305", False))
    service = make_service(app_config, FakeRxNorm(identity), FakeFDA(AMOXICILLIN_PACKAGES))

    result = await service.compute(request())

    assert result.flags.mismatch is True
    # openFDA главнее: код остаётся активным
    assert result.selection.chosen.ndc == "00093415305"


@pytest.mark.asyncio
async def test_fda_only_code_sets_mismatch(app_config):
    identity = amoxicillin_identity(CodeStatus("00093415305", None))
    service = make_service(app_config, FakeRxNorm(identity), FakeFDA(AMOXICILLIN_PACKAGES))

    result = await service.compute(request())

    assert result.flags.mismatch is True


@pytest.mark.asyncio
async def test_rxnorm_codes_missing_from_fda_set_mismatch(app_config):
    fda = FakeFDA(())
    service = make_service(app_config, FakeRxNorm(amoxicillin_identity()), fda)

    result = await service.compute(request())

    assert sorted(fda.looked_up) == ["00093415301", "00093415305"]
    assert result.flags.mismatch is True
    assert result.selection.chosen is None
    assert "No packages found for this drug in FDA data" in result.flags.notes


@pytest.mark.asyncio
async def test_fda_codes_missing_from_rxnorm_set_mismatch(app_config):
    service = make_service(app_config, FakeRxNorm(IdentityResult(drug=AMOXICILLIN)), FakeFDA(AMOXICILLIN_PACKAGES))

    result = await service.compute(request())

    assert result.flags.mismatch is True
    assert result.selection.chosen.ndc == "00093415305"


@pytest.mark.asyncio
async def test_rxnorm_only_codes_are_verified(app_config):
    identity = amoxicillin_identity(
        CodeStatus("00093415301", None),
        CodeStatus("00093415305", None),
        CodeStatus("00093415399", None),
        CodeStatus("00093415310", None),
        CodeStatus("00093415320", None),
    )
    fda = FakeFDA(
        AMOXICILLIN_PACKAGES,
        lookups={
            "00093415310": capsule("00093415310", 100),
            "00093415320": DependencyError("FDA down"),
        },
    )
    service = make_service(app_config, FakeRxNorm(identity), fda)

    result = await service.compute(request(days_supply=50))  # 100 капсул

    assert sorted(fda.looked_up) == ["00093415310", "00093415320", "00093415399"]
    assert result.selection.chosen.ndc == "00093415310"
    assert result.flags.mismatch is True
    assert "1 RxNorm NDC(s) could not be verified against FDA data" in result.flags.notes
    assert "00093415320" not in result.flags.inactive_ndcs


@pytest.mark.asyncio
async def test_verification_is_capped(app_config):
    app_config.pipeline.max_code_verifications = 2
    identity = amoxicillin_identity(*(CodeStatus(f"0009341540{i}", None) for i in range(5)))
    fda = FakeFDA(AMOXICILLIN_PACKAGES)
    service = make_service(app_config, FakeRxNorm(identity), fda)

    result = await service.compute(request())

    assert len(fda.looked_up) == 2
    assert "3 RxNorm NDC(s) not verified (verification limit reached)" in result.flags.notes


@pytest.mark.asyncio
async def test_inactive_codes_are_flagged(app_config):
    identity = amoxicillin_identity(
        CodeStatus("00093415301", None),
        CodeStatus("00093415305", None),
        CodeStatus("00093415377", False),
    )
    packages = AMOXICILLIN_PACKAGES + (capsule("00093415350", 60, active=False),)
    fda = FakeFDA(packages, lookups={"00093415377": capsule("00093415377", 60, active=False)})
    service = make_service(app_config, FakeRxNorm(identity), fda)

    result = await service.compute(request())

    assert sorted(result.flags.inactive_ndcs) == ["00093415350", "00093415377"]
    assert result.selection.chosen.ndc == "00093415305"


@pytest.mark.asyncio
async def test_inactive_only_catalog(app_config):
    packages = (capsule("00093415301", 30, active=False), capsule("00093415305", 60, active=False))
    service = make_service(app_config, FakeRxNorm(amoxicillin_identity()), FakeFDA(packages))

    result = await service.compute(request())

    assert result.selection.chosen is None
    assert "No active NDCs available for this drug" in result.flags.notes
    assert sorted(result.flags.inactive_ndcs) == ["00093415301", "00093415305"]


@pytest.mark.asyncio
async def test_total_budget_timeout(app_config):
    app_config.pipeline.total_timeout_seconds = 0.05
    service = make_service(app_config, FakeRxNorm(amoxicillin_identity()), FakeFDA(AMOXICILLIN_PACKAGES, delay=1.0))

    with pytest.raises(DependencyError) as exc_info:
        await service.compute(request())

    assert exc_info.value.message == "Request timed out while waiting for external data"
    assert exc_info.value.retry_after_seconds == app_config.pipeline.dependency_retry_after_seconds


@pytest.mark.asyncio
async def test_ndc_input_uses_lookup(app_config):
    fda = FakeFDA(lookups={"00093415305": capsule("00093415305", 60)})
    identity = IdentityResult(drug=AMOXICILLIN, codes=(CodeStatus("00093415305", True),))
    service = make_service(app_config, FakeRxNorm(identity), fda)

    result = await service.compute(request(drug_input="0093-4153-05"))

    assert fda.looked_up == ["0093-4153-05"]
    assert result.selection.chosen.ndc == "00093415305"
    assert result.directive.method is ParseMethod.RULES
