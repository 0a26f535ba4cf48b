"""
Automation validation — run by every Config Store backend before a save.

Errors block the save (they would leave a session pointing at a menu that
does not exist). Warnings describe what the renderer will do to the menu on
the tightest channel (demote, truncate) and are returned to the owner.
"""
from __future__ import annotations

from dataclasses import dataclass, field

from core.errors import AutomationValidationError
from models.schemas import ActionType, Automation, MenuType, TriggerType

LIMITS = {
    "max_name_length": 100,
    "max_description_length": 500,
    "max_body_length": 1024,
    "max_footer_length": 60,
    "max_header_text_length": 60,
    "max_button_title_length": 20,
    "max_row_title_length": 24,
    "max_row_description_length": 72,
    "max_buttons_per_menu": 3,
    "max_list_rows": 10,
    "max_trigger_keywords": 20,
    "max_menus": 50,
}


@dataclass
class ValidationReport:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def validate_automation(automation: Automation) -> ValidationReport:
    report = ValidationReport()
    errors, warnings = report.errors, report.warnings

    if not automation.name.strip():
        errors.append("Automation name is required")
    elif len(automation.name) > LIMITS["max_name_length"]:
        errors.append(f"Automation name exceeds {LIMITS['max_name_length']} characters")
    if len(automation.description) > LIMITS["max_description_length"]:
        errors.append(f"Description exceeds {LIMITS['max_description_length']} characters")

    if not automation.menus:
        errors.append("At least one menu is required")
    if len(automation.menus) > LIMITS["max_menus"]:
        errors.append(f"An automation can have at most {LIMITS['max_menus']} menus")

    menu_ids = [m.id for m in automation.menus]
    known = set(menu_ids)
    for dup in sorted({i for i in menu_ids if menu_ids.count(i) > 1}):
        errors.append(f"Duplicate menu id '{dup}'")

    reachable: set[str] = set()

    for menu in automation.menus:
        label = f'Menu "{menu.name}"'
        if not menu.body.strip():
            errors.append(f"{label} body text is required")
        elif len(menu.body) > LIMITS["max_body_length"]:
            errors.append(f"{label} body exceeds {LIMITS['max_body_length']} characters")
        if menu.footer and len(menu.footer) > LIMITS["max_footer_length"]:
            errors.append(f"{label} footer exceeds {LIMITS['max_footer_length']} characters")
        if (menu.header and menu.header.type.value == "text"
                and len(menu.header.content) > LIMITS["max_header_text_length"]):
            warnings.append(f"{label} header will be truncated to "
                            f"{LIMITS['max_header_text_length']} characters")

        if menu.message_type == MenuType.BUTTONS and len(menu.options) > LIMITS["max_buttons_per_menu"]:
            warnings.append(f"{label} has more than {LIMITS['max_buttons_per_menu']} buttons "
                            "and will be shown as a list on WhatsApp")
        if len(menu.options) > LIMITS["max_list_rows"]:
            warnings.append(f"{label} has more than {LIMITS['max_list_rows']} options "
                            "and cannot be rendered as a WhatsApp list")

        option_ids = [o.id for o in menu.options]
        for dup in sorted({i for i in option_ids if option_ids.count(i) > 1}):
            errors.append(f"{label} has duplicate option id '{dup}'")

        title_cap = (LIMITS["max_row_title_length"] if menu.message_type == MenuType.LIST
                     else LIMITS["max_button_title_length"])
        actions = [(f'Option "{o.title}"', o.action) for o in menu.options]
        if menu.next_action is not None:
            actions.append((f"{label} next action", menu.next_action))

        for option in menu.options:
            if not option.title.strip():
                errors.append(f"{label} has an option without a title")
            elif len(option.title) > title_cap:
                warnings.append(f'Option "{option.title}" title exceeds {title_cap} characters '
                                "and will be truncated")
            if option.description and len(option.description) > LIMITS["max_row_description_length"]:
                warnings.append(f'Option "{option.title}" description will be truncated')

        for name, action in actions:
            if action.type == ActionType.SHOW_MENU:
                if not action.target_menu_id:
                    errors.append(f"{name} is missing target menu")
                elif action.target_menu_id not in known:
                    errors.append(f"{name} targets unknown menu '{action.target_menu_id}'")
                else:
                    reachable.add(action.target_menu_id)
            elif action.type == ActionType.SEND_MESSAGE and not (action.message or action.media):
                errors.append(f"{name} has no message to send")

    for trigger in automation.triggers:
        if trigger.type == TriggerType.KEYWORD:
            if not [k for k in trigger.keywords if k.strip()]:
                errors.append("Keyword trigger must have at least one keyword")
            elif len(trigger.keywords) > LIMITS["max_trigger_keywords"]:
                errors.append(f"Keyword trigger can have at most {LIMITS['max_trigger_keywords']} keywords")
        if trigger.type == TriggerType.BUTTON_CLICK and not (trigger.payload_ids or trigger.keywords):
            errors.append("Button trigger must list at least one payload id")
        if not trigger.menu_id:
            errors.append("Trigger must be linked to a menu")
        elif trigger.menu_id not in known:
            errors.append(f"Trigger targets unknown menu '{trigger.menu_id}'")
        else:
            reachable.add(trigger.menu_id)

    settings = automation.settings
    if settings.welcome_enabled:
        if settings.welcome_menu_id not in known:
            errors.append("Welcome message is enabled but the welcome menu does not exist")
        else:
            reachable.add(settings.welcome_menu_id)
    if settings.session_timeout_minutes < 1:
        errors.append("Session timeout must be at least 1 minute")
    if settings.max_unresolved_attempts is not None and settings.max_unresolved_attempts < 1:
        errors.append("Maximum unresolved attempts must be at least 1")

    for menu in automation.menus:
        if menu.id not in reachable:
            warnings.append(f'Menu "{menu.name}" is not reachable from any trigger or option')

    return report


def ensure_valid(automation: Automation) -> ValidationReport:
    """Validate and raise AutomationValidationError when there are errors."""
    report = validate_automation(automation)
    if not report.valid:
        raise AutomationValidationError(report.errors)
    return report
