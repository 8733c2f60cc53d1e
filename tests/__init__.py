"""
Tests for the levelsense package.

Structure:
- test_sensor_frames.py: frame repair, coercion and drop rules
- test_orientation.py: orientation math and presentation helpers
- test_stream_client.py: connection lifecycle with fake sockets and timers
- test_device_api.py: HTTP configuration client with a fake opener
- test_*.py: config, rate tracking, history, CLI
"""
