"""testpartner - session coordination and telemetry capture for exploratory testing.

Execution contexts (capture agents, the background coordinator, popups)
agree on session state through a shared store with change notification;
collectors buffer high-frequency observations and flush them into the
current session in batches.
"""

__version__ = "0.1.0"
