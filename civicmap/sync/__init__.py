"""
Client Synchronization Module

Keeps one signed-in user's view (report list, points, level, rank) in step
with the report and profile stores, and issues the writes behind user
actions (submit, validate, change status).

Usage:
    from civicmap.sync import LocalStoreGateway, SyncSession

    gateway = LocalStoreGateway(report_store, profile_store, leaderboard)
    session = SyncSession(identity_provider, gateway, geolocation_source)
    await session.start()
    await session.submit_report(draft)
"""

from .gateway import IStoreGateway, LocalStoreGateway, marshal_to_loop
from .session import Notice, SessionState, SyncSession, UserMode, ViewState

__all__ = [
    "IStoreGateway",
    "LocalStoreGateway",
    "marshal_to_loop",
    "Notice",
    "SessionState",
    "SyncSession",
    "UserMode",
    "ViewState",
]
