"""
TRPO Pong Test Suite.

This test suite is organized into subdirectories by component:
- test_config/: Configuration tests
- test_environment/: Preprocessing and environment pool tests
- test_tape/: Compressed observation tape tests
- test_model/: Recurrent policy network tests
- test_rollout/: Rollout collection and batch packing tests
- test_trpo/: Trust-region optimizer tests
- test_trainer/: Trainer, checkpoint and lifecycle tests
- test_integration/: End-to-end integration tests

Run with: pytest tests/ -v
Run with extra verbosity: pytest tests/ -v --log-cli-level=DEBUG
Skip the real simulator: pytest tests/ -m "not slow"
"""
