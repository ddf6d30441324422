"""Forgeline identity constants."""

__version__ = "0.3.0"
__codename__ = "FORGELINE"
__tagline__ = "Plan it. Patch it. Prove it."

BANNER = r"""
  ___ ___  ___  ___ ___ _    ___ _  _ ___
 | __/ _ \| _ \/ __| __| |  |_ _| \| | __|
 | _| (_) |   / (_ | _|| |__ | || .` | _|
 |_| \___/|_|_\\___|___|____|___|_|\_|___|
"""
