from fastapi import APIRouter, Depends, HTTPException

from blockreceipt.core.security import token_dependency
from blockreceipt.queues.pipeline import TaskPipeline, get_pipeline

router = APIRouter(
    prefix="/tasks",
    tags=["Tasks"],
    dependencies=[Depends(token_dependency)]
)


@router.get("/wallet/{wallet_address}")
async def tasks_by_wallet(wallet_address: str, pipeline: TaskPipeline = Depends(get_pipeline)):
    """
    钱包下的全部任务，按创建时间倒序
    """
    tasks = pipeline.get_tasks_by_wallet(wallet_address)
    return {"success": True, "tasks": [t.to_public() for t in tasks]}


@router.get("/receipt/{receipt_id}")
async def task_by_receipt(receipt_id: str, pipeline: TaskPipeline = Depends(get_pipeline)):
    """
    收据链上最新的任务，代表该收据当前的 NFT 发放进度
    """
    task = pipeline.get_nft_purchase_status(receipt_id)
    if task is None:
        raise HTTPException(status_code=404, detail="No task found for this receipt")
    return {"success": True, "task": task.to_public()}


@router.get("/{task_id}")
async def task_detail(task_id: str, pipeline: TaskPipeline = Depends(get_pipeline)):
    task = pipeline.get_task_by_id(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return {"success": True, "task": task.to_public()}
