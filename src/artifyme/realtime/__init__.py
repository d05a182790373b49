"""Real-time infrastructure — Redis pub/sub, job status relay, WebSocket.

Learn: Events flow through two hops:
1. API services → Redis PUBLISH (after their database commit)
2. Realtime process: Redis SUBSCRIBE → ConnectionManager → user's sockets

The two processes share nothing but Redis, so either can restart without
the other. A missed message is harmless: clients can always poll
GET /api/transform/status/{job_id}.
"""
