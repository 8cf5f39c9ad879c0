"""Platform-agnostic core of the Slack/LLM bridge.

Message DSL parsing, rich-message assembly, model response interpretation,
the tool-calling orchestration loop, per-thread conversation state and
button interaction handling.
"""
