# ndc_calculator/scripts/debug_one_compute.py
import asyncio
import json
import logging

from ndc_calculator.data_models import ComputeRequest
from ndc_calculator.errors import AppError
from ndc_calculator.pipeline.compute_service import ComputeService


async def main() -> None:
    request = ComputeRequest(
        drug_input="amoxicillin 500 mg oral capsule",
        sig="1 capsule twice daily",
        days_supply=30,
    )

    service = ComputeService()
    try:
        result = await service.compute(request, correlation_id="debug-one-compute")
    except AppError as exc:
        print("ERROR:", json.dumps(exc.to_error_response(), indent=2))
        return

    print("REQUEST:", request)
    print("RESULT:", json.dumps(result.to_dict(), indent=2))


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())
