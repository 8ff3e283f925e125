from typing import Any

from fastapi import APIRouter, Body, Response, status

from tasksync.dependencies import ServicesDep, SessionDep
from tasksync.models import OrderModeUpdate, Task, TaskCreate

router = APIRouter(prefix="/api", tags=["tasks"])


@router.get("/todos", response_model=list[Task])
async def list_tasks(session: SessionDep, services: ServicesDep, response: Response):
    """List the caller's tasks; the display order mode travels in a header"""
    collection = await services.tasks.load(session.owner_key)
    response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"
    response.headers["X-Order-Mode"] = collection.order_mode.value
    return collection.tasks


@router.post("/todos", response_model=Task, status_code=status.HTTP_201_CREATED)
async def create_task(task_data: TaskCreate, session: SessionDep, services: ServicesDep):
    """Create a new task"""
    return await services.tasks.add(session.owner_key, task_data.text)


@router.put("/todos")
async def replace_tasks(session: SessionDep, services: ServicesDep, payload: Any = Body(...)):
    """Replace the whole list (undo / import)"""
    await services.tasks.replace_all(session.owner_key, payload)
    return {"message": "Todos restored successfully"}


@router.put("/todos/{task_id}", response_model=Task)
async def update_task(
    task_id: int,
    session: SessionDep,
    services: ServicesDep,
    patch: dict[str, Any] | None = Body(default=None),
):
    return await services.tasks.update(session.owner_key, task_id, patch or {})


@router.delete("/todos/{task_id}", response_model=Task)
async def delete_task(task_id: int, session: SessionDep, services: ServicesDep):
    """Delete a task and return it"""
    return await services.tasks.remove(session.owner_key, task_id)


@router.put("/sort")
async def set_order_mode(body: OrderModeUpdate, session: SessionDep, services: ServicesDep):
    order_mode = await services.tasks.set_order_mode(session.owner_key, body.order_mode)
    return {"orderMode": order_mode.value}


@router.post("/archive")
async def archive_tasks(session: SessionDep, services: ServicesDep):
    """Move the caller's task file into the archive"""
    archived_file = await services.tasks.archive(session.owner_key)
    return {
        "success": True,
        "message": "Database archived successfully",
        "archivedFile": archived_file,
    }
