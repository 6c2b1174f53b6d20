import random
from decimal import ROUND_HALF_UP, Decimal
from itertools import cycle, islice

from loguru import logger
from sqlalchemy.orm import Session

from mercator.core.exceptions import NotFoundError
from mercator.domain.models import AgentType, Task, TaskStatus
from mercator.domain.money import to_money

# Operational cost per task type, used to price generated tasks
TASK_COST_BASELINES = {
    AgentType.CATALOG: Decimal("0.057"),
    AgentType.REVIEW: Decimal("0.072"),
    AgentType.CURATION: Decimal("0.067"),
}

INPUT_REFS = {
    AgentType.CATALOG: [
        "product:electronics:wireless-earbuds",
        "product:home:smart-thermostat",
        "product:sports:carbon-fiber-bike-frame",
        "product:tech:usb-c-hub-12-port",
    ],
    AgentType.REVIEW: [
        "review:product:noise-cancelling-headphones",
        "review:product:standing-desk-roundup",
        "review:service:cloud-storage-providers",
    ],
    AgentType.CURATION: [
        "curate:collection:home-office-essentials",
        "curate:list:best-budget-smartphones",
        "curate:guide:camping-gear-beginners",
    ],
    AgentType.SELLER: ["sell:listing:refurbished-laptops"],
}


class TaskManager:
    @staticmethod
    def post_task(session: Session, task_type: AgentType, max_bid, round_number: int = 0, input_ref: str | None = None) -> Task:
        max_bid = to_money(max_bid)
        if max_bid <= 0:
            raise ValueError("max_bid must be positive")

        task = Task(
            type=task_type,
            max_bid=max_bid,
            input_ref=input_ref or random.choice(INPUT_REFS[task_type]),
            status=TaskStatus.OPEN,
            round_number=round_number,
        )
        session.add(task)
        session.commit()
        logger.debug(f"[component:tasks] Posted {task_type.value} task {task.id} with ceiling ${max_bid}")
        return task

    @staticmethod
    def open_tasks(session: Session) -> list[Task]:
        return session.query(Task).filter_by(status=TaskStatus.OPEN).order_by(Task.created_at, Task.id).all()

    @staticmethod
    def get_task(session: Session, task_id: str) -> Task:
        task = session.query(Task).filter_by(id=task_id).first()
        if not task:
            raise NotFoundError(f"Task {task_id} not found")
        return task

    @staticmethod
    def generate_round_tasks(
        session: Session,
        round_number: int,
        count: int = 3,
        multiplier_range: tuple[float, float] = (1.2, 2.0),
        rng: random.Random | None = None,
    ) -> list[Task]:
        """
        Steady-state generator: ``count`` tasks cycling through the task types, each
        priced at the type's cost baseline times a random multiplier (3 decimals).
        """
        rng = rng or random.Random()
        low, high = multiplier_range
        tasks = []
        for task_type in islice(cycle(TASK_COST_BASELINES), count):
            multiplier = Decimal(str(rng.uniform(low, high)))
            ceiling = (TASK_COST_BASELINES[task_type] * multiplier).quantize(Decimal("0.001"), rounding=ROUND_HALF_UP)
            task = Task(
                type=task_type,
                max_bid=ceiling,
                input_ref=rng.choice(INPUT_REFS[task_type]),
                status=TaskStatus.OPEN,
                round_number=round_number,
            )
            session.add(task)
            tasks.append(task)
        session.commit()
        logger.info(f"[component:tasks] Round {round_number}: generated {len(tasks)} tasks")
        return tasks
