from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from specgen.validators import (
    INCOMPLETE,
    LENGTH_TOO_SHORT,
    MIN_PROMPT_CHARS,
    STAGE_COUNT_LOW,
    Issue,
    issue_messages,
)

REPAIR_ORIGINAL_MAX_CHARS = 15000

# Issue kinds that mean "the build prompt came back short", not "a field is wrong"
ELABORATE_KINDS = frozenset({LENGTH_TOO_SHORT, STAGE_COUNT_LOW, INCOMPLETE})

BUILD_STAGES: List[str] = [
    "STAGE 1: PROJECT SETUP & BASIC STRUCTURE",
    "STAGE 2: FRONTEND CORE FUNCTIONALITY",
    "STAGE 3: AUTHENTICATION & USER MANAGEMENT",
    "STAGE 4: BACKEND API DEVELOPMENT",
    "STAGE 5: AI INTEGRATION (if applicable)",
    "STAGE 6: REAL-TIME COLLABORATION (if applicable)",
    "STAGE 7: THIRD-PARTY INTEGRATIONS",
    "STAGE 8: MOBILE APP DEVELOPMENT (if applicable)",
    "STAGE 9: TESTING & QUALITY ASSURANCE",
    "STAGE 10: DEPLOYMENT & DEVOPS",
]


def _elaboration_block() -> List[str]:
    lines = [
        "",
        "=" * 63,
        "CRITICAL: The fullPrompt is too short or incomplete.",
        "=" * 63,
        "",
        "You MUST expand the fullPrompt to include:",
        "",
        f"1. ALL {len(BUILD_STAGES)} DEVELOPMENT STAGES in this exact order:",
    ]
    lines.extend(f"   - {heading}" for heading in BUILD_STAGES)
    lines.extend([
        "",
        "2. Each stage MUST have numbered sub-steps (1.1, 1.2, 2.1, 2.2, ...)",
        "",
        "3. Include EVERY detail from the specifications provided:",
        "   - every feature from overview.coreFeaturesOverview",
        "   - every screen from overview.screenDescriptions.screens",
        "   - every UI component from overview.screenDescriptions.uiComponents",
        "   - every table from technical.databaseSchema.tables",
        "   - every endpoint from technical.apiEndpoints",
        "   - every color, font and spacing value from design.visualStyleGuide",
        "",
        f"4. Minimum {MIN_PROMPT_CHARS:,} characters total. This is NOT optional.",
        "",
        "5. Do NOT summarize or shorten. Replace every placeholder [LIKE_THIS] with real values.",
        "",
        "6. Be operational: function signatures with parameters, component props,",
        "   endpoint request/response formats, schemas with relationships, step-by-step flows.",
        "",
        "A developer must be able to build the complete application from this prompt",
        "on the first attempt without asking questions.",
    ])
    return lines


def build_repair_prompt(issues: List[Issue], original_json: Optional[str]) -> str:
    """User instruction asking the model to fix exactly the listed violations."""
    lines = [
        "You returned JSON that failed validation.",
        "Fix ONLY the listed issues. Keep structure and IDs stable.",
        "Return ONLY valid JSON (no markdown, no code fences).",
        "",
        "Issues:",
        json.dumps(issue_messages(issues), indent=2, ensure_ascii=False),
    ]
    if any(i.get("kind") in ELABORATE_KINDS for i in issues):
        lines.extend(_elaboration_block())
    lines.extend([
        "",
        "Original JSON:",
        (original_json or "")[:REPAIR_ORIGINAL_MAX_CHARS],
    ])
    return "\n".join(lines)


def _as_text(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, indent=2, ensure_ascii=False)
    return str(value)


def fix_diagram_instructions(
    diagram_type: str,
    broken_code: str,
    technical_spec: Any = None,
    overview: Any = None,
) -> Dict[str, str]:
    return {
        "system": "You are a Mermaid diagram syntax expert. Fix broken Mermaid diagram code.",
        "developer": "Return ONLY the corrected Mermaid code without any explanations or additional text.",
        "user": (
            f"Fix this broken {diagram_type} Mermaid diagram:\n\n{broken_code}\n\n"
            f"Technical context: {_as_text(technical_spec) if technical_spec else 'N/A'}\n"
            f"Overview: {_as_text(overview) if overview else 'N/A'}\n\n"
            "Return ONLY the corrected Mermaid code."
        ),
    }


def analyze_screens_instructions(overview: Any, design: Any, technical: Any = None) -> Dict[str, str]:
    technical_block = f"TECHNICAL:\n{_as_text(technical)}\n\n" if technical else ""
    return {
        "system": (
            "You are a frontend architecture expert. "
            "Analyze application specifications to identify all screens and pages."
        ),
        "developer": (
            "Return ONLY valid JSON with a 'screens' array. Each screen object must have: "
            "id (string), name (string), description (string), "
            "deviceType (string: 'web', 'mobile', or 'both'), order (number)."
        ),
        "user": (
            "Analyze this application specification and identify all screens/pages that need mockups:\n\n"
            f"OVERVIEW:\n{_as_text(overview)}\n\n"
            f"DESIGN:\n{_as_text(design)}\n\n"
            f"{technical_block}"
            'Return a JSON object shaped like {"screens": [{"id": "home-page", "name": "Home Page", '
            '"description": "Main landing page with hero section and navigation", "deviceType": "web", "order": 1}]}\n\n'
            "Identify 5-8 key screens based on the user journey and screen descriptions."
        ),
    }


def design_system_text(design: Any) -> str:
    """The visual style guide when one can be found, otherwise the whole design spec."""
    obj = design
    if isinstance(design, str):
        try:
            obj = json.loads(design)
        except ValueError:
            return design
    if isinstance(obj, dict):
        nested = obj.get("design")
        if isinstance(nested, dict) and nested.get("visualStyleGuide"):
            return _as_text(nested["visualStyleGuide"])
        if obj.get("visualStyleGuide"):
            return _as_text(obj["visualStyleGuide"])
    return _as_text(obj)


def mockup_instructions(
    screen: Dict[str, Any],
    overview: Any,
    design: Any,
    technical: Any = None,
    use_mock_data: bool = False,
) -> Dict[str, str]:
    technical_block = f"TECHNICAL CONTEXT:\n{_as_text(technical)}\n\n" if technical else ""
    if use_mock_data:
        data_note = (
            "IMPORTANT: Include realistic mock data: names, emails, dates and numbers, "
            "sample rows in tables, lists and cards, so it looks like a working application."
        )
        fill_rule = "Fill with realistic mock data"
    else:
        data_note = 'IMPORTANT: Use placeholder content (e.g., "Sample Text", "Example Data").'
        fill_rule = "Use placeholder text"
    return {
        "system": (
            "You are an expert frontend developer creating production-quality HTML+CSS mockups. "
            "Create complete, standalone HTML pages that are modern and match the design system."
        ),
        "developer": (
            "Return ONLY valid HTML (no markdown, no code fences, no explanations). "
            "The HTML must be a complete standalone document with CSS embedded in a <style> tag. "
            "Basic JavaScript for interactivity is allowed."
        ),
        "user": (
            "Create an HTML+CSS mockup for this screen:\n\n"
            f"SCREEN: {screen.get('name', '')}\n"
            f"DESCRIPTION: {screen.get('description', '')}\n"
            f"DEVICE TYPE: {screen.get('deviceType', 'both')}\n\n"
            f"APPLICATION OVERVIEW:\n{_as_text(overview)}\n\n"
            f"DESIGN SYSTEM:\n{design_system_text(design)}\n\n"
            f"{technical_block}"
            f"{data_note}\n\n"
            "REQUIREMENTS:\n"
            "1. A complete, standalone HTML5 document\n"
            "2. All CSS embedded in <style> (no external files)\n"
            "3. Exact colors, typography and design elements from the design system\n"
            "4. Responsive, mobile-first\n"
            "5. Cards, buttons, forms and navigation where the screen needs them\n"
            "6. Hover effects and light JavaScript interactivity\n"
            "7. Semantic HTML5 elements\n"
            f"8. {fill_rule}\n"
            "9. Fill gaps in the specification sensibly from context\n\n"
            "Return ONLY the HTML code, nothing else."
        ),
    }


def mindmap_instructions(overview: Any, technical: Any) -> Dict[str, str]:
    return {
        "system": (
            "You analyze software product specifications and turn them into flow diagrams. "
            "Represent: Features, Screens, Variables (internal state and settings), Permissions, "
            "Integrations (third-party services and APIs) and User Flows."
        ),
        "developer": (
            'Return ONLY a JSON object in Drawflow format: {"drawflow": {"Home": {"data": {"<n>": node}}}}. '
            "Each node needs: id (unique number), name (kebab-case), data.label, class (category), "
            "html, typenode (false), inputs, outputs, pos_x and pos_y. "
            "Start from a product-root node labelled with the product name, add one category node per area, "
            "and child nodes for every feature, screen, variable, permission, integration and flow. "
            "Link nodes through outputs/inputs connections and lay them out left to right, top to bottom. "
            "No markdown, no code fences."
        ),
        "user": (
            "Analyze this product specification and create a mind map:\n\n"
            f"OVERVIEW DATA:\n{_as_text(overview)}\n\n"
            f"TECHNICAL DATA:\n{_as_text(technical)}\n\n"
            "Show all features, screens, variables, permissions, integrations and user flows with their relationships."
        ),
    }
