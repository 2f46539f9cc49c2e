from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models.ledger_models import Tool
from services.assignment_service import active_assigned_by_tool, active_assigned_quantity, count_returned
from services.damage_service import unresolved_damage_by_tool, unresolved_damage_count


@dataclass(frozen=True)
class ToolCounts:
    tool_id: int
    total: int
    in_use: int
    damaged: int
    min_stock: int = 0

    @property
    def available(self) -> int:
        return self.total - self.in_use - self.damaged

    @property
    def committed(self) -> int:
        return self.in_use + self.damaged

    @property
    def status(self) -> str:
        if self.available <= 0:
            return "Out of Stock"
        if self.available <= self.min_stock:
            return "Low Stock"
        return "Available"

    @property
    def assignment_state(self) -> str:
        usable = self.total - self.damaged
        if self.in_use == 0:
            return "Fully Available"
        if self.in_use >= usable:
            return "Fully Assigned"
        return "Partially Assigned"

    def as_dict(self) -> dict:
        return {
            "toolID": self.tool_id,
            "total": self.total,
            "available": self.available,
            "inUse": self.in_use,
            "damaged": self.damaged,
            "status": self.status,
            "assignmentState": self.assignment_state,
        }


def compute_tool_counts(db: Session, tool: Tool) -> ToolCounts:
    return ToolCounts(
        tool_id=tool.ToolID,
        total=int(tool.TotalQuantity or 0),
        in_use=active_assigned_quantity(db, tool.ToolID),
        damaged=unresolved_damage_count(db, tool.ToolID),
        min_stock=int(tool.MinStock or 0),
    )


def all_tool_counts(db: Session, tools: list[Tool] | None = None) -> dict[int, ToolCounts]:
    if tools is None:
        tools = db.execute(select(Tool)).scalars().all()
    in_use = active_assigned_by_tool(db)
    damaged = unresolved_damage_by_tool(db)
    return {
        tool.ToolID: ToolCounts(
            tool_id=tool.ToolID,
            total=int(tool.TotalQuantity or 0),
            in_use=in_use.get(tool.ToolID, 0),
            damaged=damaged.get(tool.ToolID, 0),
            min_stock=int(tool.MinStock or 0),
        )
        for tool in tools
    }


def stats_for(db: Session, tool: Tool) -> dict:
    return compute_tool_counts(db, tool).as_dict()


def fleet_stats(db: Session) -> dict:
    counts = all_tool_counts(db)
    start_of_day = datetime.combine(datetime.now().date(), time.min)
    return {
        "totalTools": len(counts),
        "totalQuantity": sum(item.total for item in counts.values()),
        "toolsInUse": sum(item.in_use for item in counts.values()),
        "availableTools": sum(item.available for item in counts.values()),
        "damagedTools": sum(item.damaged for item in counts.values()),
        "returnedTools": count_returned(db),
        "returnedToday": count_returned(db, since=start_of_day),
    }


def summary_report(db: Session) -> dict:
    counts = all_tool_counts(db)
    return {
        "totalTools": len(counts),
        "totalQuantity": sum(item.total for item in counts.values()),
        "lowStock": sum(1 for item in counts.values() if item.status == "Low Stock"),
        "outOfStock": sum(1 for item in counts.values() if item.status == "Out of Stock"),
        "underMaintenance": sum(1 for item in counts.values() if item.damaged > 0),
    }


def category_distribution(db: Session) -> list[dict]:
    rows = db.execute(
        select(Tool.Category, func.count(Tool.ToolID), func.sum(Tool.TotalQuantity))
        .group_by(Tool.Category)
        .order_by(func.count(Tool.ToolID).desc(), Tool.Category)
    ).all()
    return [
        {"category": category or "General", "count": int(count or 0), "quantity": int(quantity or 0)}
        for category, count, quantity in rows
    ]
