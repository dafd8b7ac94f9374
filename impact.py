"""Volunteer impact summary: completed work, ratings and achievements."""

from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from pymongo.database import Database

import feedback_service
from database import FEEDBACK, REQUESTS, as_utc, get_documents
from schemas import Feedback, Principal, RequestStatus, ServiceRequest

HOURS_PER_REQUEST = 2
MILESTONES = (5, 10, 25, 50, 100)
COUNT_ACHIEVEMENTS = (
    (1, "first-help", "First Helper", "Completed your first request", "Heart"),
    (5, "helping-hand", "Helping Hand", "Completed 5 requests", "Users"),
    (10, "community-champion", "Community Champion", "Completed 10 requests", "Trophy"),
    (25, "super-volunteer", "Super Volunteer", "Completed 25 requests", "Award"),
)


def _month_start(moment: datetime, months_back: int = 0) -> datetime:
    year, month = moment.year, moment.month - months_back
    while month < 1:
        month += 12
        year -= 1
    return moment.replace(year=year, month=month, day=1, hour=0, minute=0, second=0, microsecond=0)


def _next_month(start: datetime) -> datetime:
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


def achievements(stats: dict, completed: List[ServiceRequest]) -> list:
    """``completed`` is ordered newest first."""
    earned = []
    count = stats["completed_requests"]
    for threshold, key, title, description, icon in COUNT_ACHIEVEMENTS:
        if count >= threshold:
            earned.append({
                "id": key,
                "title": title,
                "description": description,
                "icon": icon,
                "earned": True,
                "earned_at": completed[count - threshold].completed_at,
            })
    if stats["average_rating"] >= 4.5 and stats["total_feedback"] >= 3:
        earned.append({
            "id": "five-star-helper",
            "title": "Five Star Helper",
            "description": "Maintained 4.5+ star rating",
            "icon": "Star",
            "earned": True,
        })
    if stats["this_week_requests"] >= 3:
        earned.append({
            "id": "weekly-hero",
            "title": "Weekly Hero",
            "description": "Completed 3+ requests this week",
            "icon": "Zap",
            "earned": True,
        })

    milestone = next((m for m in MILESTONES if count < m), None)
    if milestone:
        earned.append({
            "id": "next-milestone",
            "title": f"{milestone} Requests",
            "description": f"Complete {milestone - count} more requests",
            "icon": "Target",
            "earned": False,
            "progress": count / milestone * 100,
        })
    return earned


def volunteer_impact(db: Database, volunteer: Principal, now: Optional[datetime] = None) -> dict:
    now = now or datetime.now(timezone.utc)
    completed = [
        ServiceRequest.from_document(doc)
        for doc in get_documents(
            db,
            REQUESTS,
            {"assigned_to": volunteer.id, "status": RequestStatus.COMPLETED.value, "is_active": True},
            sort=[("completed_at", -1)],
        )
    ]
    feedback = [
        Feedback.from_document(doc)
        for doc in get_documents(
            db, FEEDBACK, {"to_user": volunteer.id, "is_active": True}, sort=[("created_at", -1)]
        )
    ]

    month_start = _month_start(now)
    week_start = (now - timedelta(days=(now.weekday() + 1) % 7)).replace(
        hour=0, minute=0, second=0, microsecond=0
    )  # weeks start on Sunday
    completed_times = [as_utc(r.completed_at) for r in completed if r.completed_at]

    stats = {
        "completed_requests": len(completed),
        "total_hours": len(completed) * HOURS_PER_REQUEST,
        "average_rating": sum(f.rating for f in feedback) / len(feedback) if feedback else 0,
        "total_feedback": len(feedback),
        "this_month_requests": sum(1 for t in completed_times if t >= month_start),
        "this_week_requests": sum(1 for t in completed_times if t >= week_start),
    }

    monthly_progress = []
    for months_back in range(5, -1, -1):
        start = _month_start(now, months_back)
        end = _next_month(start)
        monthly_progress.append({
            "month": start.strftime("%b"),
            "year": start.year,
            "requests": sum(1 for t in completed_times if start <= t < end),
        })

    recent_feedback = feedback_service.present(db, feedback[:5])
    return {
        "stats": stats,
        "recent_activity": [
            {
                "id": r.id,
                "title": r.title,
                "type": r.type,
                "location": r.location,
                "completed_at": r.completed_at,
            }
            for r in completed[:10]
        ],
        "achievements": achievements(stats, completed),
        "monthly_progress": monthly_progress,
        "type_breakdown": dict(Counter(r.type for r in completed)),
        "recent_feedback": recent_feedback,
    }
