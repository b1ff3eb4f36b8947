"""
ClipGuard - video ingestion, content vetting and live progress telemetry.
"""
__version__ = "1.0.0"
