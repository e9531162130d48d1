class PipelineError(Exception):
    """任务流水线内部错误的基类"""


class UnknownTaskTypeError(PipelineError, ValueError):
    def __init__(self, task_type):
        super().__init__(f"Unknown task type: {task_type}")
        self.task_type = task_type


class InvalidTransitionError(PipelineError):
    def __init__(self, task_id: str, current: str, target: str):
        super().__init__(f"Task {task_id} cannot move from {current} to {target}")
        self.task_id = task_id
        self.current = current
        self.target = target
