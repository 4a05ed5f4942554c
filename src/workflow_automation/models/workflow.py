"""
工作流定义模型（图模型）
"""
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Dict, Any, Optional, Iterable, Set
from uuid import uuid4

from ..utils import utcnow


class TriggerType(Enum):
    """触发器类型"""
    RECORD_CREATE = "record_create"
    RECORD_UPDATE = "record_update"
    FIELD_CHANGE = "field_change"
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    FORM_SUBMIT = "form_submit"
    PAYMENT_RECEIVED = "payment_received"


class ReentryMode(Enum):
    """重入策略"""
    ALWAYS = "always"
    ONCE = "once"
    ONCE_PER_DAY = "once_per_day"
    ONCE_PER_WEEK = "once_per_week"


class NodeKind(Enum):
    """节点类型"""
    TRIGGER = "trigger"
    ACTION = "action"
    DECISION = "decision"
    WAIT = "wait"


class ActionType(Enum):
    """内置动作类型（具体处理器由宿主应用注册）"""
    SEND_EMAIL = "send_email"
    SEND_SMS = "send_sms"
    CREATE_TASK = "create_task"
    UPDATE_FIELD = "update_field"


class MatchMode(Enum):
    """条件列表的布尔组合方式"""
    ALL = "all"   # AND
    ANY = "any"   # OR


class Branch(Enum):
    """决策节点出边标签"""
    YES = "yes"
    NO = "no"


@dataclass
class Condition:
    """过滤条件 (field, operator, value)"""
    field: str
    operator: str
    value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "operator": self.operator, "value": self.value}


@dataclass
class ConditionSet:
    """条件集合，整个列表使用同一个布尔模式，不支持嵌套分组"""
    conditions: List[Condition] = field(default_factory=list)
    match: MatchMode = MatchMode.ALL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conditions": [c.to_dict() for c in self.conditions],
            "match": self.match.value
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ConditionSet":
        if not data:
            return cls()
        return cls(
            conditions=[
                Condition(
                    field=c["field"],
                    operator=c["operator"],
                    value=c.get("value")
                )
                for c in data.get("conditions", [])
            ],
            match=MatchMode(data.get("match") or data.get("match_type") or MatchMode.ALL.value)
        )


@dataclass
class Node:
    """工作流节点"""
    id: str
    kind: NodeKind
    name: Optional[str] = None
    action_type: Optional[str] = None  # 仅 action 节点
    parameters: Dict[str, Any] = field(default_factory=dict)  # 仅 action 节点
    condition: Optional[ConditionSet] = None  # 仅 decision 节点
    wait: Dict[str, Any] = field(default_factory=dict)  # 仅 wait 节点: duration / until / until_field
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "kind": self.kind.value,
            "name": self.name,
            "metadata": self.metadata
        }
        if self.kind == NodeKind.ACTION:
            data["action_type"] = self.action_type
            data["parameters"] = self.parameters
        elif self.kind == NodeKind.DECISION:
            data["condition"] = self.condition.to_dict() if self.condition else None
        elif self.kind == NodeKind.WAIT:
            data["wait"] = self.wait
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Node":
        condition = data.get("condition")
        return cls(
            id=data["id"],
            kind=NodeKind(data["kind"]),
            name=data.get("name"),
            action_type=data.get("action_type"),
            parameters=data.get("parameters") or {},
            condition=ConditionSet.from_dict(condition) if condition is not None else None,
            wait=data.get("wait") or {},
            metadata=data.get("metadata") or {}
        )


@dataclass
class Edge:
    """工作流边，离开决策节点时带 yes/no 标签"""
    source: str
    target: str
    branch: Optional[Branch] = None
    id: str = field(default_factory=lambda: str(uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "target": self.target,
            "branch": self.branch.value if self.branch else None
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Edge":
        branch = data.get("branch")
        return cls(
            id=data.get("id") or str(uuid4()),
            source=data["source"],
            target=data["target"],
            branch=Branch(branch) if branch else None
        )


@dataclass
class Graph:
    """有向无环图：节点与边"""
    nodes: List[Node] = field(default_factory=list)
    edges: List[Edge] = field(default_factory=list)

    def get_node(self, node_id: str) -> Optional[Node]:
        """根据ID获取节点"""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def outgoing(self, node_id: str) -> List[Edge]:
        """节点的出边（保持定义顺序）"""
        return [edge for edge in self.edges if edge.source == node_id]

    def trigger_nodes(self) -> List[Node]:
        return [node for node in self.nodes if node.kind == NodeKind.TRIGGER]

    def successor(self, node_id: str, branch: Optional[Branch] = None) -> Optional[str]:
        """
        后继节点ID

        branch 为 None 时返回唯一的无标签出边目标；否则返回对应标签的出边目标。
        没有匹配的出边时返回 None（设计上的终点）。
        """
        for edge in self.outgoing(node_id):
            if edge.branch == branch:
                return edge.target
        return None

    def reachable_from(self, node_id: str) -> Set[str]:
        """从给定节点可达的节点集合（包含自身）"""
        seen = {node_id}
        queue = deque([node_id])
        while queue:
            current = queue.popleft()
            for edge in self.outgoing(current):
                if edge.target not in seen:
                    seen.add(edge.target)
                    queue.append(edge.target)
        return seen

    def has_cycle(self) -> bool:
        """检测是否存在环（拓扑排序）"""
        adj = defaultdict(list)
        in_degree = {node.id: 0 for node in self.nodes}

        for edge in self.edges:
            if edge.source in in_degree and edge.target in in_degree:
                adj[edge.source].append(edge.target)
                in_degree[edge.target] += 1

        queue = deque([node_id for node_id, degree in in_degree.items() if degree == 0])
        visited = 0

        while queue:
            node_id = queue.popleft()
            visited += 1
            for neighbor in adj[node_id]:
                in_degree[neighbor] -= 1
                if in_degree[neighbor] == 0:
                    queue.append(neighbor)

        return visited != len(in_degree)

    def validate(self, known_action_types: Optional[Iterable[str]] = None) -> List[str]:
        """验证图的不变量，返回错误列表"""
        errors = []

        node_ids = [node.id for node in self.nodes]
        if len(node_ids) != len(set(node_ids)):
            errors.append("Duplicate node IDs found")
        id_set = set(node_ids)

        for edge in self.edges:
            if edge.source not in id_set:
                errors.append(f"Edge source '{edge.source}' not found in nodes")
            if edge.target not in id_set:
                errors.append(f"Edge target '{edge.target}' not found in nodes")

        triggers = self.trigger_nodes()
        if len(triggers) != 1:
            errors.append(f"Graph must have exactly one trigger node, found {len(triggers)}")
        else:
            trigger = triggers[0]
            if any(edge.target == trigger.id for edge in self.edges):
                errors.append(f"Trigger node '{trigger.id}' must have no incoming edges")
            trigger_out = self.outgoing(trigger.id)
            if len(trigger_out) != 1 or trigger_out[0].branch is not None:
                errors.append(f"Trigger node '{trigger.id}' must have exactly one untagged outgoing edge")

        known = set(known_action_types) if known_action_types is not None else None

        for node in self.nodes:
            outgoing = self.outgoing(node.id)
            if node.kind == NodeKind.DECISION:
                yes = [e for e in outgoing if e.branch == Branch.YES]
                no = [e for e in outgoing if e.branch == Branch.NO]
                untagged = [e for e in outgoing if e.branch is None]
                if len(yes) != 1 or len(no) != 1 or untagged:
                    errors.append(
                        f"Decision node '{node.id}' must have exactly one 'yes' and one 'no' outgoing edge"
                    )
                if node.condition is None or not node.condition.conditions:
                    errors.append(f"Decision node '{node.id}' has no conditions")
            elif node.kind != NodeKind.TRIGGER:
                if any(e.branch is not None for e in outgoing):
                    errors.append(f"Node '{node.id}' is not a decision and cannot have tagged edges")
                if len(outgoing) > 1:
                    errors.append(f"Node '{node.id}' must have at most one outgoing edge")

            if node.kind == NodeKind.ACTION:
                if not node.action_type:
                    errors.append(f"Action node '{node.id}' has no action_type")
                elif known is not None and node.action_type not in known:
                    errors.append(f"Action node '{node.id}' uses unknown action type '{node.action_type}'")

            if node.kind == NodeKind.WAIT:
                if not any(key in node.wait for key in ("duration", "until", "until_field")):
                    errors.append(f"Wait node '{node.id}' needs a duration, until or until_field")

        if self.has_cycle():
            errors.append("Workflow graph contains cycles")

        return errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": [node.to_dict() for node in self.nodes],
            "edges": [edge.to_dict() for edge in self.edges]
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Graph":
        data = data or {}
        return cls(
            nodes=[Node.from_dict(n) for n in data.get("nodes", [])],
            edges=[Edge.from_dict(e) for e in data.get("edges", [])]
        )


@dataclass
class Workflow:
    """工作流定义"""
    id: str = field(default_factory=lambda: str(uuid4()))
    name: str = ""
    object_type: str = ""
    trigger_type: TriggerType = TriggerType.MANUAL
    trigger_config: Dict[str, Any] = field(default_factory=dict)
    entry_criteria: ConditionSet = field(default_factory=ConditionSet)
    reentry_mode: ReentryMode = ReentryMode.ALWAYS
    graph: Graph = field(default_factory=Graph)
    description: Optional[str] = None
    is_active: bool = False
    execution_count: int = 0
    version: int = 1
    last_scheduled_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def nodes(self) -> List[Node]:
        return self.graph.nodes

    @property
    def edges(self) -> List[Edge]:
        return self.graph.edges

    def get_node(self, node_id: str) -> Optional[Node]:
        return self.graph.get_node(node_id)

    def validate_graph(self, known_action_types: Optional[Iterable[str]] = None) -> List[str]:
        """验证工作流定义的合法性（在 draft → active 时调用）"""
        errors = self.graph.validate(known_action_types)
        if self.trigger_type == TriggerType.FIELD_CHANGE and not self.trigger_config.get("field"):
            errors.append("field_change trigger requires trigger_config.field")
        if self.trigger_type == TriggerType.SCHEDULED and not self.trigger_config.get("cron"):
            errors.append("scheduled trigger requires trigger_config.cron")
        return errors

    def validation_warnings(self) -> List[str]:
        """非致命问题：从触发节点不可达的节点"""
        triggers = self.graph.trigger_nodes()
        if len(triggers) != 1:
            return []
        reachable = self.graph.reachable_from(triggers[0].id)
        orphaned = [node.id for node in self.graph.nodes if node.id not in reachable]
        if orphaned:
            return [f"{len(orphaned)} node(s) are not connected and will not be executed: {orphaned}"]
        return []

    def to_dict(self) -> Dict[str, Any]:
        """工作流对象转字典"""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "object_type": self.object_type,
            "trigger_type": self.trigger_type.value,
            "trigger_config": self.trigger_config,
            "entry_criteria": self.entry_criteria.to_dict(),
            "reentry_mode": self.reentry_mode.value,
            "graph": self.graph.to_dict(),
            "is_active": self.is_active,
            "execution_count": self.execution_count,
            "version": self.version,
            "metadata": self.metadata
        }
