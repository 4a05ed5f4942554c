"""
工作流解析器

将 YAML / JSON 文档或字典解析为工作流定义（草稿）。
图不变量在激活时验证，这里只检查文档结构。
"""
import json
from pathlib import Path
from typing import Dict, Any, List, Union

import yaml
from jsonschema import Draft7Validator

from ..exceptions import WorkflowParseError
from ..models.workflow import (
    Workflow, Graph, Node, Edge, ConditionSet, NodeKind, TriggerType, ReentryMode, Branch
)


CONDITION_SET_SCHEMA = {
    "type": "object",
    "properties": {
        "match": {"enum": ["all", "any"]},
        "match_type": {"enum": ["all", "any"]},
        "conditions": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["field", "operator"],
                "properties": {
                    "field": {"type": "string", "minLength": 1},
                    "operator": {"type": "string", "minLength": 1}
                }
            }
        }
    }
}

WORKFLOW_SCHEMA = {
    "type": "object",
    "required": ["name", "object_type", "nodes"],
    "properties": {
        "id": {"type": "string"},
        "name": {"type": "string", "minLength": 1},
        "description": {"type": ["string", "null"]},
        "object_type": {"type": "string", "minLength": 1},
        "trigger_type": {"enum": [t.value for t in TriggerType]},
        "trigger_config": {"type": "object"},
        "trigger": {
            "type": "object",
            "properties": {
                "type": {"enum": [t.value for t in TriggerType]},
                "config": {"type": "object"}
            }
        },
        "entry_criteria": {"anyOf": [CONDITION_SET_SCHEMA, {"type": "null"}]},
        "reentry_mode": {"enum": [m.value for m in ReentryMode]},
        "nodes": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["id", "kind"],
                "properties": {
                    "id": {"type": "string", "minLength": 1},
                    "kind": {"enum": [k.value for k in NodeKind]},
                    "action_type": {"type": ["string", "null"]},
                    "parameters": {"type": "object"},
                    "condition": {"anyOf": [CONDITION_SET_SCHEMA, {"type": "null"}]},
                    "wait": {"type": "object"}
                }
            }
        },
        "edges": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "source": {"type": "string"},
                    "target": {"type": "string"},
                    "from": {"type": "string"},
                    "to": {"type": "string"},
                    "branch": {"enum": [b.value for b in Branch] + [None]}
                }
            }
        },
        "metadata": {"type": "object"}
    }
}


class WorkflowParser:
    """工作流解析器"""

    def __init__(self):
        self.parsers = {
            'yaml': self._parse_yaml,
            'yml': self._parse_yaml,
            'json': self._parse_json
        }
        self.validator = Draft7Validator(WORKFLOW_SCHEMA)

    def parse(self, source: Union[str, Path, Dict[str, Any]]) -> Workflow:
        """
        解析工作流定义

        Args:
            source: 工作流定义来源，可以是文件路径、字符串或字典

        Returns:
            Workflow: 解析后的工作流对象（未激活）
        """
        if isinstance(source, dict):
            return self._parse_dict(source)

        if isinstance(source, Path):
            return self.parse_file(source)

        if isinstance(source, str):
            if "\n" not in source and len(source) < 4096:
                path = Path(source)
                if path.suffix.lower().lstrip('.') in self.parsers and path.is_file():
                    return self.parse_file(path)
            return self.parse_string(source)

        raise WorkflowParseError(f"Unsupported source type: {type(source)}")

    def parse_file(self, file_path: Path) -> Workflow:
        """解析工作流文件"""
        file_path = Path(file_path)
        suffix = file_path.suffix.lower().lstrip('.')
        if suffix not in self.parsers:
            raise WorkflowParseError(f"Unsupported file format: {suffix}")

        try:
            content = file_path.read_text(encoding='utf-8')
        except OSError as e:
            raise WorkflowParseError(f"Cannot read workflow file {file_path}: {e}") from e

        return self._parse_dict(self.parsers[suffix](content))

    def parse_string(self, content: str) -> Workflow:
        """解析工作流字符串（JSON 是 YAML 的子集，统一按 YAML 读取）"""
        return self._parse_dict(self._parse_yaml(content))

    def _parse_yaml(self, content: str) -> Dict[str, Any]:
        """解析YAML格式"""
        try:
            return yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise WorkflowParseError(f"Failed to parse YAML: {e}")

    def _parse_json(self, content: str) -> Dict[str, Any]:
        """解析JSON格式"""
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise WorkflowParseError(f"Failed to parse JSON: {e}")

    def validate_document(self, data: Dict[str, Any]) -> List[str]:
        """按 JSON Schema 检查文档结构，返回错误列表"""
        errors = []
        for error in sorted(self.validator.iter_errors(data), key=lambda e: [str(p) for p in e.path]):
            location = ".".join(str(p) for p in error.path) or "<root>"
            errors.append(f"{location}: {error.message}")
        return errors

    def _parse_dict(self, data: Any) -> Workflow:
        """解析字典格式的工作流定义"""
        if not isinstance(data, dict):
            raise WorkflowParseError("Workflow definition must be a mapping")

        if 'workflow' in data:
            data = data['workflow']
        if isinstance(data, dict) and 'graph' in data and 'nodes' not in data:
            data = {**data, **(data.get('graph') or {})}

        errors = self.validate_document(data)
        if errors:
            raise WorkflowParseError(f"Invalid workflow definition: {'; '.join(errors)}")

        trigger = data.get('trigger') or {}
        trigger_type = data.get('trigger_type') or trigger.get('type') or TriggerType.MANUAL.value
        trigger_config = data.get('trigger_config') or trigger.get('config') or {}

        workflow = Workflow(
            name=data['name'],
            description=data.get('description'),
            object_type=data['object_type'],
            trigger_type=TriggerType(trigger_type),
            trigger_config=dict(trigger_config),
            entry_criteria=ConditionSet.from_dict(data.get('entry_criteria')),
            reentry_mode=ReentryMode(data.get('reentry_mode', ReentryMode.ALWAYS.value)),
            graph=Graph(
                nodes=[self._parse_node(n) for n in data.get('nodes', [])],
                edges=[self._parse_edge(e) for e in data.get('edges', [])]
            ),
            metadata=data.get('metadata') or {}
        )
        if data.get('id'):
            workflow.id = str(data['id'])
        return workflow

    def _parse_node(self, data: Dict[str, Any]) -> Node:
        """解析节点，兼容 wait_days / wait_hours 简写"""
        node = Node.from_dict(data)
        if node.kind == NodeKind.WAIT and not node.wait:
            duration = {}
            if 'wait_days' in data:
                duration['days'] = data['wait_days']
            if 'wait_hours' in data:
                duration['hours'] = data['wait_hours']
            if duration:
                node.wait = {'duration': duration}
            elif 'wait_until_field' in data:
                node.wait = {'until_field': data['wait_until_field']}
        return node

    def _parse_edge(self, data: Dict[str, Any]) -> Edge:
        """解析边，兼容 from / to 写法"""
        source = data.get('source') or data.get('from')
        target = data.get('target') or data.get('to')
        if not source or not target:
            raise WorkflowParseError(f"Edge must define source and target: {data}")
        return Edge.from_dict({**data, 'source': source, 'target': target})
