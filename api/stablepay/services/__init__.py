"""Engine services: routing, queueing, scheduling, execution, and monitoring."""
