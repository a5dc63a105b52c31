"""
PTW Engine
Blueprint registry.

    permit_bp         permits and their lifecycle transitions
    policy_bp         per-company module policy
    notification_bp   in-app notifications, timers and periodic jobs
"""
