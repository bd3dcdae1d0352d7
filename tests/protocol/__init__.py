"""Protocol behavior tests for mixlink.

These tests validate end-to-end behavior including:
- Blocking sessions over a socketpair (test_session.py)
- Asyncio sessions over loopback TCP (test_async_session.py)
- The echo tools and their health endpoints (test_echo.py)
- Handshake vectors and interop with noiseprotocol
"""
