"""Tenant Jobs - job scheduling and execution engine for multi-tenant stores."""

__app_name__ = "tenant-jobs"
__version__ = "0.1.0"
