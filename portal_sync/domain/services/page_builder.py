"""Page builder for rendering entity snapshots as workspace properties and blocks."""

from datetime import datetime
from typing import Any

from portal_sync.domain.entities import (
    DeliverableSnapshot,
    LeadSnapshot,
    MilestoneSnapshot,
    MilestoneSummary,
    ProjectSnapshot,
)

# Service tiers shown in the Tier / Recommended Tier selects
TIER_NAMES: dict[int, str] = {
    1: "Seedling",
    2: "Sprout",
    3: "Canopy",
    4: "Legacy",
}

TIER_COLORS: dict[int, str] = {
    1: "green",
    2: "blue",
    3: "purple",
    4: "yellow",
}

PROJECT_STATUS_COLORS: dict[str, str] = {
    "INTAKE": "gray",
    "ONBOARDING": "blue",
    "IN_PROGRESS": "yellow",
    "AWAITING_FEEDBACK": "orange",
    "REVISIONS": "pink",
    "DELIVERED": "green",
    "CLOSED": "default",
}

LEAD_STATUS_COLORS: dict[str, str] = {
    "NEW": "blue",
    "QUALIFIED": "green",
    "NEEDS_REVIEW": "orange",
    "CONVERTED": "purple",
    "CLOSED": "gray",
}

LEAD_STATUS_EMOJI: dict[str, str] = {
    "NEW": "🆕",
    "QUALIFIED": "✅",
    "NEEDS_REVIEW": "👀",
    "CONVERTED": "🎉",
    "CLOSED": "❌",
}

MILESTONE_STATUS_EMOJI: dict[str, str] = {
    "PENDING": "⏳",
    "IN_PROGRESS": "🔄",
    "COMPLETED": "✅",
}

CATEGORY_EMOJI: dict[str, str] = {
    "Document": "📄",
    "Photo": "📷",
    "Drawing": "📐",
    "Plan": "🗺️",
    "Invoice": "🧾",
    "Contract": "📝",
    "Report": "📊",
    "Presentation": "📽️",
    "Video": "🎬",
    "Audio": "🎵",
    "Archive": "📦",
    "Other": "📎",
}

BUDGET_DISPLAY: dict[str, str] = {
    "under_5k": "Under $5,000",
    "5k_15k": "$5,000 - $15,000",
    "15k_50k": "$15,000 - $50,000",
    "50k_plus": "$50,000+",
    "not_sure": "Not Sure",
}

TIMELINE_DISPLAY: dict[str, str] = {
    "asap": "ASAP",
    "1_3_months": "1-3 Months",
    "3_6_months": "3-6 Months",
    "6_12_months": "6-12 Months",
    "planning": "Just Planning",
}

# Workspace caps a single rich_text content at 2000 characters
MAX_TEXT_LENGTH = 2000


def tier_name(tier: int) -> str:
    return TIER_NAMES.get(tier, f"Tier {tier}")


def format_file_size(size: int) -> str:
    """Human-readable size ('1.5 MB')."""
    if size <= 0:
        return "0 Bytes"
    value = float(size)
    for unit in ("Bytes", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            break
        value /= 1024
    return f"{round(value, 2):g} {unit}"


def _text(content: str, **annotations: Any) -> dict[str, Any]:
    item: dict[str, Any] = {
        "type": "text",
        "text": {"content": content[:MAX_TEXT_LENGTH]},
    }
    if annotations:
        item["annotations"] = annotations
    return item


def _title(content: str) -> dict[str, Any]:
    return {"title": [_text(content)]}


def _rich_text(content: str | None, default: str = "N/A") -> dict[str, Any]:
    return {"rich_text": [_text(content or default)]}


def _select(name: str, color: str | None = None) -> dict[str, Any]:
    option: dict[str, Any] = {"name": name}
    if color:
        option["color"] = color
    return {"select": option}


def _date(value: datetime | None) -> dict[str, Any]:
    return {"date": {"start": value.isoformat()} if value else None}


def _block(block_type: str, **content: Any) -> dict[str, Any]:
    return {"object": "block", "type": block_type, block_type: content}


def _heading(content: str, level: int = 2) -> dict[str, Any]:
    return _block(f"heading_{level}", rich_text=[_text(content)])


def _callout(emoji: str, content: str) -> dict[str, Any]:
    return _block("callout", icon={"type": "emoji", "emoji": emoji}, rich_text=[_text(content)])


def _paragraph(content: str, **annotations: Any) -> dict[str, Any]:
    return _block("paragraph", rich_text=[_text(content, **annotations)])


def _bullet(label: str, value: str) -> dict[str, Any]:
    return _block(
        "bulleted_list_item",
        rich_text=[_text(f"{label}: ", bold=True), _text(value)],
    )


class PageBuilder:
    """Builds workspace page properties and body blocks from snapshots."""

    # --- projects ---

    @staticmethod
    def project_properties(project: ProjectSnapshot, full: bool = True) -> dict[str, Any]:
        """Page properties for a project.

        Args:
            project: Project snapshot
            full: Include create-only properties (client, dates, internal id).
                Updates send only the fields that change over a project's life.

        Returns:
            Workspace properties payload
        """
        properties: dict[str, Any] = {
            "Name": _title(project.name),
            "Status": _select(
                project.status, PROJECT_STATUS_COLORS.get(project.status, "default")
            ),
            "Tier": _select(tier_name(project.tier), TIER_COLORS.get(project.tier, "default")),
            "Progress": {"number": project.progress},
        }
        if project.payment_status:
            properties["Payment Status"] = _select(
                project.payment_status,
                "green" if project.payment_status.lower() == "paid" else "yellow",
            )
        if not full:
            return properties

        properties.update(
            {
                "Address": _rich_text(project.project_address),
                "Client": _rich_text(
                    project.client_name or project.client_email, default="Unknown"
                ),
                "Client Email": {"email": project.client_email},
                "Created At": _date(project.created_at),
                "Internal ID": _rich_text(project.id),
            }
        )
        return properties

    @staticmethod
    def project_blocks(project: ProjectSnapshot) -> list[dict[str, Any]]:
        """Body of a newly created project page: overview, milestones, deliverables."""
        client = project.client_name or "Unknown"
        email = project.client_email or "No email"
        blocks = [
            _heading("Project Overview"),
            _callout("👤", f"Client: {client} ({email})"),
            _callout(
                "🌱",
                f"Tier: {tier_name(project.tier)} | "
                f"Address: {project.project_address or 'N/A'}",
            ),
        ]
        if project.milestones:
            blocks.append(_heading("Milestones"))
            ordered = sorted(project.milestones, key=lambda m: m.order)
            blocks.extend(PageBuilder.milestone_summary_block(m) for m in ordered)
        blocks.append(_heading("Deliverables"))
        blocks.append(
            _paragraph("Deliverables will appear here as they are uploaded.", italic=True, color="gray")
        )
        return blocks

    # --- milestones ---

    @staticmethod
    def _todo(
        name: str,
        status: str,
        due_date: datetime | None = None,
        completed_at: datetime | None = None,
    ) -> dict[str, Any]:
        completed = status == "COMPLETED"
        emoji = MILESTONE_STATUS_EMOJI.get(status, "⏳")
        rich_text = [_text(f"{emoji} {name}", strikethrough=completed)]
        if due_date:
            rich_text.append(
                _text(
                    f" (Due: {due_date.date().isoformat()})",
                    color="gray" if completed else "default",
                )
            )
        if completed_at:
            rich_text.append(
                _text(
                    f" Completed {completed_at.date().isoformat()}",
                    color="green",
                    italic=True,
                )
            )
        return _block("to_do", checked=completed, rich_text=rich_text)

    @staticmethod
    def milestone_block(milestone: MilestoneSnapshot) -> dict[str, Any]:
        """To-do block representing a milestone inside its project page."""
        return PageBuilder._todo(
            milestone.name, milestone.status, milestone.due_date, milestone.completed_at
        )

    @staticmethod
    def milestone_summary_block(milestone: MilestoneSummary) -> dict[str, Any]:
        return PageBuilder._todo(milestone.name, milestone.status, milestone.due_date)

    @staticmethod
    def milestone_block_update(milestone: MilestoneSnapshot) -> dict[str, Any]:
        """Payload for updating an existing to-do block in place."""
        block = PageBuilder.milestone_block(milestone)
        return {"to_do": block["to_do"]}

    # --- deliverables ---

    @staticmethod
    def deliverable_properties(deliverable: DeliverableSnapshot) -> dict[str, Any]:
        extension = ""
        if "." in deliverable.name:
            extension = deliverable.name.rsplit(".", 1)[-1].upper()
        properties: dict[str, Any] = {
            "Name": _title(deliverable.name),
            "Category": _select(deliverable.category),
            "File Type": _rich_text(extension or deliverable.file_type, default=""),
            "File Size": _rich_text(format_file_size(deliverable.file_size)),
            "Project": _rich_text(deliverable.project_name, default="Unknown Project"),
            "Uploaded At": _date(deliverable.created_at),
            "Internal ID": _rich_text(deliverable.id),
        }
        if deliverable.file_url:
            properties["Download URL"] = {"url": deliverable.file_url}
        return properties

    @staticmethod
    def deliverable_blocks(deliverable: DeliverableSnapshot) -> list[dict[str, Any]]:
        emoji = CATEGORY_EMOJI.get(deliverable.category, CATEGORY_EMOJI["Other"])
        blocks = [
            _callout(
                emoji,
                f"{deliverable.category} | {format_file_size(deliverable.file_size)}",
            )
        ]
        if deliverable.description:
            blocks.append(_paragraph(deliverable.description))
        if deliverable.file_url:
            blocks.append(_block("divider"))
            if (deliverable.file_type or "").startswith("image/"):
                blocks.append(_heading("Preview", level=3))
                blocks.append(
                    _block("image", type="external", external={"url": deliverable.file_url})
                )
            blocks.append(_heading("Download", level=3))
            blocks.append(_block("bookmark", url=deliverable.file_url))
        if deliverable.parent_external_id:
            blocks.append(_heading("Related Project", level=3))
            blocks.append(
                _block("link_to_page", type="page_id", page_id=deliverable.parent_external_id)
            )
        return blocks

    # --- leads ---

    @staticmethod
    def lead_properties(lead: LeadSnapshot, full: bool = True) -> dict[str, Any]:
        budget = BUDGET_DISPLAY.get(lead.budget_range or "", lead.budget_range or "Not specified")
        timeline = TIMELINE_DISPLAY.get(lead.timeline or "", lead.timeline or "Not specified")
        properties: dict[str, Any] = {
            "Name": _title(lead.name or lead.email),
            "Status": _select(lead.status, LEAD_STATUS_COLORS.get(lead.status, "default")),
            "Recommended Tier": _select(
                tier_name(lead.recommended_tier),
                TIER_COLORS.get(lead.recommended_tier, "default"),
            ),
            "Budget": _select(budget),
            "Timeline": _select(timeline),
        }
        if not full:
            return properties

        properties.update(
            {
                "Email": {"email": lead.email},
                "Project Type": _rich_text(lead.project_type, default="Not specified"),
                "Address": _rich_text(lead.project_address),
                "Has Survey": {"checkbox": lead.has_survey},
                "Has Drawings": {"checkbox": lead.has_drawings},
                "Created At": _date(lead.created_at),
                "Internal ID": _rich_text(lead.id),
            }
        )
        return properties

    @staticmethod
    def lead_blocks(lead: LeadSnapshot) -> list[dict[str, Any]]:
        emoji = LEAD_STATUS_EMOJI.get(lead.status, "📋")
        blocks = [
            _callout(emoji, f"Status: {lead.status}"),
            _heading("Contact Information"),
            _bullet("Email", lead.email),
        ]
        if lead.name:
            blocks.append(_bullet("Name", lead.name))
        blocks.extend(
            [
                _heading("Project Details"),
                _bullet("Address", lead.project_address or "N/A"),
                _bullet("Project Type", lead.project_type or "Not specified"),
                _heading("Available Assets"),
                _block("to_do", checked=lead.has_survey, rich_text=[_text("Property Survey")]),
                _block(
                    "to_do", checked=lead.has_drawings, rich_text=[_text("Architectural Drawings")]
                ),
                _heading("Tier Recommendation"),
                _paragraph(tier_name(lead.recommended_tier), bold=True),
            ]
        )
        if lead.routing_reason:
            blocks.append(_paragraph(lead.routing_reason, italic=True, color="gray"))
        return blocks
