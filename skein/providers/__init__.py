"""
Providers - pluggable collaborators of the agent loop.

- llm: Model capability and streaming chunks
- tools: Tool contract and registry
"""
