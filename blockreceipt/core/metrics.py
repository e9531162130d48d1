from prometheus_client import Counter, Gauge, Histogram, REGISTRY
from prometheus_client.openmetrics.exposition import generate_latest

# 1. 任务创建 / 排队
TASK_CREATED_TOTAL = Counter(
    "blockreceipt_task_created_total",
    "Total number of pipeline tasks created",
    ["task_type"]
)

TASK_QUEUE_SIZE = Gauge(
    "blockreceipt_task_queue_size",
    "Current number of task ids waiting in the pipeline queue"
)

# 2. 任务执行
TASK_FINISHED_TOTAL = Counter(
    "blockreceipt_task_finished_total",
    "Total number of tasks that reached a terminal status",
    ["task_type", "status"]
)

TASK_FAILED_TOTAL = Counter(
    "blockreceipt_task_failed_total",
    "Total number of failed tasks by failure kind",
    ["task_type", "error_type"]
)

TASK_PROCESSING_SECONDS = Histogram(
    "blockreceipt_task_processing_seconds",
    "Time spent processing a single task",
    ["task_type"],
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, float("inf"))
)

# 3. 链式任务
TASK_CHAINED_TOTAL = Counter(
    "blockreceipt_task_chained_total",
    "Follow-up tasks spawned from a predecessor outcome",
    ["from_type", "to_type"]
)


def get_metrics_data():
    """
    OpenMetrics 格式的监控数据
    """
    return generate_latest(REGISTRY)
