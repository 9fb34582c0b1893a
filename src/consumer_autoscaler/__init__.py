"""
Consumer autoscaler.

A Kubernetes operator that scales Kafka consumer Deployments on consumer lag,
bounded by the partition count of the topic they consume.
"""

__version__ = "0.1.0"
