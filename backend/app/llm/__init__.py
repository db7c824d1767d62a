"""
AI Analysis Package

Provides the request/response path to the external AI analysis service:
  - service.py   AnalysisService interface + Bedrock (Anthropic) implementation
  - prompts.py   system instructions: field schema, master preamble, unit context
  - invoker.py   retry/backoff, response parsing, token accounting

Public API::

    from app.llm import AnalysisInvoker, BedrockAnalysisService

    invoker = AnalysisInvoker.from_settings(BedrockAnalysisService.from_settings())
    result  = await invoker.analyze_unit(text, "text", build_system_instructions())
"""

from app.llm.invoker import AnalysisInvoker, UnitAnalysis, parse_record_payload
from app.llm.prompts import UnitContext, build_system_instructions
from app.llm.service import AnalysisService, BedrockAnalysisService, ServiceResponse

__all__ = [
    "AnalysisInvoker",
    "AnalysisService",
    "BedrockAnalysisService",
    "ServiceResponse",
    "UnitAnalysis",
    "UnitContext",
    "build_system_instructions",
    "parse_record_payload",
]
