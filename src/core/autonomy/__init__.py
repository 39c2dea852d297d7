"""
Keystone Autonomy Module

This module owns the per-action decision path:
- Configuration (config.py)
- User autonomy presets and overrides (settings.py)
- Six-factor confidence estimation (confidence.py)
- The autonomy gate and its execution grants (gate.py)
- The engine facade wiring gate, ledger, memory and learning (engine.py)

Feature flags:
- FEATURE_HEARTBEAT: Heartbeat scanner
- FEATURE_LEARNING: Feedback-driven rule learning
- FEATURE_SEMANTIC_MEMORY: Embedding-based similarity search
"""

__version__ = "0.1.0"
