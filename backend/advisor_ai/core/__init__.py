"""
Core application modules.
Contains configuration, logging, metrics, tracing and the error taxonomy.
"""
