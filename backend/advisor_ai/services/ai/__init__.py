"""
AI orchestration services package.

Mediates every feature's model call through one pipeline:

- Prompt Compiler renders a versioned prompt
- Cache & Coalescer suppresses duplicate upstream calls
- Budget Ledger reserves, then settles, each user's daily allowance
- Model Gateway calls the provider (sync or streaming)
- Output Validator turns raw model text into typed results

This package never decides business outcomes; it transports, budgets,
caches and validates the provider's judgments.
"""
