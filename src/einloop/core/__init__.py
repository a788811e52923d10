"""Core compiler passes and runtime for einloop."""

__all__ = [
    "ast",
    "collect",
    "context",
    "directives",
    "evaluator",
    "exceptions",
    "executor",
    "kernel",
    "normalize",
    "parser",
    "plan",
]
