from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from .models import TimesheetRow

if TYPE_CHECKING:
    from .config import EntryRulesConfig


logger = logging.getLogger(__name__)

# Picking one of these projects clears and disables the Tool and Charge Code dropdowns.
DEFAULT_PROJECTS_WITHOUT_TOOLS: tuple[str, ...] = (
    "ERT",
    "PTO/RTO",
    "SWFL-CHEM/GAS",
    "Training",
)

# Picking one of these tools clears and disables the Charge Code dropdown.
DEFAULT_TOOLS_WITHOUT_CHARGE_CODES: tuple[str, ...] = (
    "Internal Meeting",
    "DECA Meeting",
    "Logistics",
    "Meeting",
    "Non Tool Related",
    "Admin",
    "Training",
    "N/A",
)

DEFAULT_CHARGE_CODES: tuple[str, ...] = (
    "Admin",
    "EPR1",
    "EPR2",
    "EPR3",
    "EPR4",
    "Repair",
    "Meeting",
    "Other",
    "PM",
    "Training",
    "Upgrade",
)

TOOL_REQUIRED_MESSAGE = "Please pick a tool for this project"
CHARGE_CODE_REQUIRED_MESSAGE = "Please pick a charge code for this tool"


def project_needs_tool(project: Optional[str], rules: "EntryRulesConfig") -> bool:
    if not project:
        return False
    return project not in rules.projects_without_tools


def tool_needs_charge_code(tool: Optional[str], rules: "EntryRulesConfig") -> bool:
    if not tool:
        return False
    return tool not in rules.tools_without_charge_codes


def normalize_entry(row: TimesheetRow, rules: "EntryRulesConfig") -> TimesheetRow:
    """
    Drop a tool the project does not take, and a charge code the tool does not take.
    """
    update: dict[str, None] = {}
    if not project_needs_tool(row.project, rules):
        update["tool"] = None
        update["charge_code"] = None
    elif not tool_needs_charge_code(row.tool, rules):
        update["charge_code"] = None

    dropped = [k for k in update if getattr(row, k) is not None]
    if dropped:
        logger.info("Cleared %s for project %r (not used by this project/tool)", ", ".join(dropped), row.project)
    return row.model_copy(update=update) if update else row


def entry_problem(row: TimesheetRow, rules: "EntryRulesConfig") -> Optional[str]:
    """
    First dropdown rule the row breaks, or None. Call on a normalized row.
    """
    if rules.projects and row.project not in rules.projects:
        return f"Unknown project {row.project!r}; please pick from the list"

    if not project_needs_tool(row.project, rules):
        return None
    if not row.tool:
        return TOOL_REQUIRED_MESSAGE

    if not tool_needs_charge_code(row.tool, rules):
        return None
    if not row.charge_code:
        return CHARGE_CODE_REQUIRED_MESSAGE
    if rules.charge_codes and row.charge_code not in rules.charge_codes:
        return f"Unknown charge code {row.charge_code!r}; please pick from the list"
    return None
