"""
ZoneWatch - Incident Heatmaps and Risk Zones for Citizen Reports

This package turns a live stream of citizen-submitted incident reports into
operator views: weighted heatmap points, clustered risk zones, and per-zone
trend series.

Modules:
    - core: Distance/weight primitives, greedy clustering, risk scoring, trends
    - feeds: Data sources, record normalization, resilient subscriptions
    - monitor: Orchestration of the live aggregation pipeline
    - config: Environment-driven configuration
"""

__version__ = "1.0.0"
__author__ = "ZoneWatch Team"
__license__ = "MIT"
