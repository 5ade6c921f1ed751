"""
内置节点

可直接在配置文件中通过 node_class 引用，例如:
    node_class: "robocore.nodes.demo:TalkerNode"
"""

from robocore.nodes.demo import ListenerNode, TalkerNode

__all__ = ["ListenerNode", "TalkerNode"]
