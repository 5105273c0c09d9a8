"""
LLM Provider Package

Provider-agnostic access to the analysis backends:
  - OpenAI           (langchain ChatOpenAI, JSON mode)
  - Azure OpenAI     (same models, different endpoint — failover target)
  - Google Gemini    (generateContent REST; also used for vision OCR)

Public API::

    from casedocs.llm import build_analysis_providers

    providers = build_analysis_providers(settings)
    text = await providers[0].complete(build_analysis_messages(document_text))
"""

from casedocs.llm.prompts import build_analysis_messages
from casedocs.llm.providers import AnalysisProvider, build_analysis_providers

__all__ = [
    "AnalysisProvider",
    "build_analysis_messages",
    "build_analysis_providers",
]
