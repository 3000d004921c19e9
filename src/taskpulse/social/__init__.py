"""
Social subsystem: friends, direct-message history, leaderboard.
"""
