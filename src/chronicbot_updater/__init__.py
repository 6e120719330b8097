"""Self-updating release manager for the CHRONICbot edge agent.

Checks GitHub Releases for a newer tag, downloads and verifies the
release artifacts, swaps them into the active installation and rolls
back if the new version fails its post-install health gate.
"""

__version__ = "0.3.0"
