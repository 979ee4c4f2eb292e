"""AI Provider Gateway.

Routes completion, streaming, structured-extraction, embedding and
multimodal requests to external LLM providers with:
  - Credential Pools (per-provider round-robin API keys)
  - Provider Adapters (Gemini, OpenAI; capability-tagged)
  - Retry/Fallback Orchestrator (rotate on rate limit, fall back otherwise)
  - Response Normalizer (JSON repair for model output)
  - Gateway Facade (AiGateway)
"""
