"""
connectors — OAuth connection lifecycle for the HighLevel integration.

Provides:
  • authorization URL generation with single-use state tokens
  • code → token exchange and look-ahead token refresh
  • Fernet encryption of stored tokens
  • connection telemetry (events, integration errors, activity feed)
  • scheduled refresh of expiring tokens and connection health checks
"""
