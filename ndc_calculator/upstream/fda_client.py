# ndc_calculator/upstream/fda_client.py
from __future__ import annotations

import datetime as dt
import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ndc_calculator.config import AppConfig, config
from ndc_calculator.data_models import PackageRecord, RequestContext
from ndc_calculator.resilience.cache import ResilientCache
from ndc_calculator.resilience.rate_limiter import SlidingWindowRateLimiter
from ndc_calculator.upstream.base import UpstreamClient
from ndc_calculator.upstream.ndc import normalize_ndc, ten_digit_variants
from ndc_calculator.upstream.package_size import normalize_package_size

logger = logging.getLogger(__name__)

SEARCH_LIMIT = 100
LOOKUP_LIMIT = 5

# "500 mg", "10 mg/5 mL", "100 units/mL", "0.5%"
_STRENGTH_TOKEN = re.compile(
    r"\b\d+(?:\.\d+)?\s*(?:mg|mcg|g|ml|units?|iu|%|meq)(?:\s*/\s*\d*(?:\.\d+)?\s*(?:ml|l|g|actuation|hr))?\b",
    re.IGNORECASE,
)
_FORM_WORDS = re.compile(
    r"\b(?:oral|tablets?|capsules?|tabs?|caps?|solution|suspension|syrup|injection|injectable|pen|vial|"
    r"inhaler|aerosol|metered|extended|release|er|xr|dr|chewable|powder|for|cream|ointment)\b",
    re.IGNORECASE,
)
_CONCENTRATION_TOKEN = re.compile(r"\bu-?\d+\b", re.IGNORECASE)
_QUOTE = re.compile(r'["\\]')


def search_term_for(name: str) -> str:
    """
    Из "amoxicillin 500 mg oral capsule" делает "amoxicillin":
    дозировка и лекарственная форма в поиске openFDA только мешают.
    """
    term = _STRENGTH_TOKEN.sub(" ", name)
    term = _CONCENTRATION_TOKEN.sub(" ", term)
    term = _FORM_WORDS.sub(" ", term)
    term = _QUOTE.sub("", term)
    term = re.sub(r"\s+", " ", term).strip()
    return term or _QUOTE.sub("", name).strip()


def _parse_date(value: Any) -> Optional[dt.date]:
    if not value:
        return None
    try:
        return dt.datetime.strptime(str(value)[:8], "%Y%m%d").date()
    except ValueError:
        return None


def is_active(product: Mapping[str, Any], packaging: Optional[Mapping[str, Any]] = None, today: Optional[dt.date] = None) -> bool:
    """
    Активность упаковки. Без поля упаковка активна, неактивной считаем
    только при явном признаке: active=FALSE или дата окончания маркетинга в прошлом.
    """
    today = today or dt.date.today()
    raw = product.get("active")
    if isinstance(raw, bool):
        if not raw:
            return False
    elif raw not in (None, "") and str(raw).strip().upper() in ("FALSE", "N", "NO", "0"):
        return False

    for source in (packaging, product):
        if not source:
            continue
        end = _parse_date(source.get("marketing_end_date"))
        if end is not None and end < today:
            return False
    return True


def _record(product: Mapping[str, Any], packaging: Optional[Mapping[str, Any]], raw_ndc: str, today: dt.date) -> PackageRecord:
    pkg_size, inference = normalize_package_size(product, packaging)
    description = (packaging or {}).get("description") or product.get("package_description")
    return PackageRecord(
        ndc=normalize_ndc(raw_ndc),
        pkg_size=pkg_size,
        active=is_active(product, packaging, today),
        dosage_form=product.get("dosage_form") or None,
        brand_name=product.get("brand_name") or product.get("generic_name") or None,
        description=description,
        size_inference=inference,
    )


def parse_products(data: Any, today: Optional[dt.date] = None) -> Tuple[PackageRecord, ...]:
    """
    Раскрывает выдачу openFDA в записи по упаковкам.

    Продукт со списком packaging даёт по записи на каждый package_ndc,
    плоская запись (без packaging) принимается как есть. Дубли по NDC отбрасываем.
    """
    today = today or dt.date.today()
    results = (data or {}).get("results") or []
    records: Dict[str, PackageRecord] = {}

    for product in results:
        if not isinstance(product, Mapping):
            continue
        packaging_list = product.get("packaging")
        if isinstance(packaging_list, list) and packaging_list:
            for packaging in packaging_list:
                if not isinstance(packaging, Mapping) or not packaging.get("package_ndc"):
                    continue
                record = _record(product, packaging, str(packaging["package_ndc"]), today)
                records.setdefault(record.ndc, record)
            continue

        raw_ndc = product.get("package_ndc") or product.get("ndc") or product.get("product_ndc")
        if not raw_ndc:
            continue
        record = _record(product, None, str(raw_ndc), today)
        records.setdefault(record.ndc, record)

    return tuple(records.values())


class FDAClient(UpstreamClient):
    """
    Клиент справочника NDC openFDA (drug/ndc.json).

    Источник истины по активности и размеру упаковок. Кэш 24 часа,
    лимит строже, чем у RxNorm (3 запроса/сек).
    """

    source_label = "FDA"

    def __init__(
        self,
        cache: Optional[ResilientCache[Any]] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        app_config: Optional[AppConfig] = None,
    ) -> None:
        app_config = app_config or config
        super().__init__(app_config.fda, cache=cache, rate_limiter=rate_limiter, app_config=app_config)
        self._api_key = app_config.fda.api_key

    def _params(self, search: str, limit: int) -> Dict[str, Any]:
        params: Dict[str, Any] = {"search": search, "limit": limit}
        if self._api_key:
            params["api_key"] = self._api_key
        return params

    async def lookup_by_ndc(self, ndc: str, ctx: Optional[RequestContext] = None) -> Optional[PackageRecord]:
        """
        Упаковка по коду или None, если openFDA её не знает.

        openFDA хранит 10-значные коды с дефисами, поэтому ищем по всем
        вариантам, в которые мог превратиться канонический 11-значный код.
        """
        ndc11 = normalize_ndc(ndc)
        variants: List[str] = ten_digit_variants(ndc11)
        stripped = ndc.strip()
        if "-" in stripped and stripped not in variants:
            variants.insert(0, stripped)
        if not variants:
            logger.warning("Cannot build openFDA lookup for NDC %s", ndc)
            return None

        search = " ".join(f'packaging.package_ndc:"{variant}"' for variant in variants)
        records = await self._cached_call(
            "lookup_by_ndc",
            ndc11,
            "",
            self._params(search, LOOKUP_LIMIT),
            parse_products,
            (),
            ctx,
        )
        for record in records:
            if record.ndc == ndc11:
                return record
        return None

    async def search_by_name(self, name: str, ctx: Optional[RequestContext] = None) -> Tuple[PackageRecord, ...]:
        """
        Все упаковки по бренду или МНН. Пустой кортеж, если ничего не нашлось
        (openFDA отвечает 404, это отрицательный результат, а не отказ).
        """
        term = search_term_for(name)
        search = f'brand_name:"{term}" generic_name:"{term}"'
        records = await self._cached_call(
            "search_by_name",
            term,
            "",
            self._params(search, SEARCH_LIMIT),
            parse_products,
            (),
            ctx,
        )
        logger.info("FDA search %s returned %s packages", term, len(records))
        return records
