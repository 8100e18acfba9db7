# ndc_calculator/smoke_llm.py
import asyncio

from ndc_calculator.llm_client.provider_client import ProviderLLMClient


async def main():
    client = ProviderLLMClient()

    raw = await client.interpret_directive_raw("Take 1 tab by mouth every morning and 2 at night for pain")
    print("RAW LLM RESPONSE:", raw)


if __name__ == "__main__":
    asyncio.run(main())
