"""
agent-sandbox core: errors, event registry and configuration.
"""
