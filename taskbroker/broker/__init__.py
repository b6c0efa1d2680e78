"""
Broker module.
Contains the RabbitMQ connection, topology, signing, publishers and consumers.
"""

from taskbroker.broker.connection import BrokerConnection
from taskbroker.broker.consumer import BaseConsumer, SecureConsumer, start_consumer
from taskbroker.broker.publisher import PublisherRegistry, TaskPublisher
from taskbroker.broker.signing import sign_message, verify_signature
from taskbroker.broker.topology import Topology, assert_topology

__all__ = [
    "BrokerConnection",
    "assert_topology",
    "Topology",
    "sign_message",
    "verify_signature",
    "TaskPublisher",
    "PublisherRegistry",
    "BaseConsumer",
    "SecureConsumer",
    "start_consumer",
]
