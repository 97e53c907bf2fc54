"""
Hosted AI Package

Everything that talks to the extraction / embedding models:

  gateway.py     ExtractionGateway (AsyncOpenAI) and the AIInput payload
  prompts.py     Per-vertical prompt builders
  resilience.py  with_timeout / with_retry / resilient decorators

Public API::

    from app.llm import AIInput, ExtractionGateway

    gateway = ExtractionGateway()
    raw     = await gateway.extract_structured(source, Vertical.ACCOUNTING)
"""

from app.llm.gateway import AIInput, ExtractionGateway
from app.llm.resilience import resilient, with_retry, with_timeout

__all__ = [
    "AIInput",
    "ExtractionGateway",
    "resilient",
    "with_retry",
    "with_timeout",
]
