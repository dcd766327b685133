"""
yari - agentic tool-calling loop with an external tool-session broker.
"""

__version__ = "0.1.0"
__logo__ = "🪝"
