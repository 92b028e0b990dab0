"""Project identity constants shared by the CLI and reports."""

__version__ = "0.3.0"
__codename__ = "PATCHLOOP"
__tagline__ = "Gather. Generate. Verify. Roll back."

BANNER = r"""
  ___  _ _____ ___ _  _ _    ___   ___  ___
 | _ \/_\_   _/ __| || | |  / _ \ / _ \| _ \
 |  _/ _ \| || (__| __ | |_| (_) | (_) |  _/
 |_|/_/ \_\_| \___|_||_|____\___/ \___/|_|
"""
