"""
Vigil: conversational security-operations assistant.

This package turns natural-language requests into knowledge answers,
plans, or risk-gated executions of a small set of network tools
(nmap, dig, whois) against an allow-listed address space.
"""

from importlib.metadata import version

__version__ = version("vigil")
__all__ = ["__version__"]
