"""
Review agent integration

Prompt rendering, supervised agent execution and interpretation of the
agent's final metrics block.
"""
