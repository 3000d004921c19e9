"""TaskPulse: realtime task tracking with alerts, chat and a leaderboard."""

__version__ = "0.1.0"
