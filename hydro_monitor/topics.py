"""
MQTT topic layout for the grow system: ``{namespace}/{node}/{category}``.
"""

from typing import List, NamedTuple, Optional

DEFAULT_NAMESPACE = "grow"

SENSOR = "sensor"
ACTUATOR = "actuator"
DEVICE = "device"

CATEGORIES = (SENSOR, ACTUATOR, DEVICE)


class TopicParts(NamedTuple):
    namespace: str
    node: str
    category: str


def subscription_topics(namespace: str = DEFAULT_NAMESPACE) -> List[str]:
    """Wildcard subscriptions covering every node for each category"""
    return [f"{namespace}/+/{category}" for category in CATEGORIES]


def topic_for(node: str, category: str, namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/{node}/{category}"


def command_topic_for(node: str, namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/{node}/{ACTUATOR}/set"


def will_topic(namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/app/{DEVICE}"


def parse_topic(topic: str, namespace: str = DEFAULT_NAMESPACE) -> Optional[TopicParts]:
    """Split a topic into its parts, or None if it is not a 3-segment namespace topic"""
    parts = topic.split("/")
    if len(parts) != 3 or parts[0] != namespace or not parts[1]:
        return None
    return TopicParts(*parts)


def node_from_device_id(device_id: str, default: str = "rpi") -> str:
    """The node is the first underscore-delimited segment of a synthetic device id"""
    node = device_id.split("_")[0]
    return node or default
