"""Stateful services: batch factory, progression engine, schedule aggregator."""
