"""capdispatch -- capability-dispatch runtime for tenant-scoped AI agents.

A generative model answers a user's question by calling a bounded palette of
typed, validated skills, folding their results back into the conversation and
converging on a final answer within a fixed step budget.
"""

__version__ = "0.1.0"
