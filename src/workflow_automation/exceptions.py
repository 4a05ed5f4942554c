"""
工作流自动化引擎异常定义
"""


class WorkflowEngineError(Exception):
    """工作流引擎基础异常"""
    pass


class WorkflowParseError(WorkflowEngineError):
    """工作流定义解析异常"""
    pass


class GraphValidationError(WorkflowEngineError):
    """工作流图验证异常（激活时抛出，阻止激活）"""
    def __init__(self, workflow_id: str, errors: list):
        self.workflow_id = workflow_id
        self.errors = list(errors)
        super().__init__(
            f"Workflow '{workflow_id}' failed graph validation: {'; '.join(self.errors)}"
        )


class TriggerConfigError(WorkflowEngineError):
    """触发器配置或准入条件无法解析"""
    def __init__(self, workflow_id: str, message: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow '{workflow_id}' trigger configuration error: {message}")


class EntryAdmissionConflict(WorkflowEngineError):
    """准入竞争失败（重入策略拒绝或并发插入冲突）"""
    def __init__(self, workflow_id: str, record_id: str, message: str = None):
        self.workflow_id = workflow_id
        self.record_id = record_id
        msg = f"Execution for workflow '{workflow_id}' and record '{record_id}' not admitted"
        if message:
            msg += f": {message}"
        super().__init__(msg)


class WorkflowExecutionError(WorkflowEngineError):
    """工作流执行异常"""
    pass


class NodeExecutionError(WorkflowExecutionError):
    """节点执行异常"""
    def __init__(self, node_id: str, message: str, cause: Exception = None):
        self.node_id = node_id
        self.message = message
        self.cause = cause
        super().__init__(f"Node '{node_id}' execution failed: {message}")


class UnknownActionTypeError(WorkflowEngineError):
    """未注册的动作类型"""
    def __init__(self, action_type: str):
        self.action_type = action_type
        super().__init__(f"No handler registered for action type '{action_type}'")


class SchedulerClaimConflict(WorkflowEngineError):
    """调度器认领冲突（另一个调度实例已认领）"""
    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution '{execution_id}' already claimed")


class StateTransitionError(WorkflowEngineError):
    """状态转换异常"""
    def __init__(self, current_state: str, target_state: str, message: str = None):
        self.current_state = current_state
        self.target_state = target_state
        msg = f"Invalid state transition from '{current_state}' to '{target_state}'"
        if message:
            msg += f": {message}"
        super().__init__(msg)


class WorkflowNotFoundError(WorkflowEngineError):
    """工作流不存在"""
    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow not found: {workflow_id}")


class ExecutionNotFoundError(WorkflowEngineError):
    """执行实例不存在"""
    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution not found: {execution_id}")
