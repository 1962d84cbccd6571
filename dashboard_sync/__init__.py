"""
CRM Dashboard Sync

Batched realtime polling, subscription fan-out, and event-driven cache
invalidation for the lead-management dashboard's Supabase-backed data.
"""

__version__ = "0.1.0"
