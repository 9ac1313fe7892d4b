"""PlanSync: ProductBoard <-> Azure DevOps synchronization and caching engine."""

__version__ = "0.1.0"
