from __future__ import annotations

from typing import Dict, List, Optional

SELF_HOSTED_SYSTEM_PROMPT = (
    "You are an expert web component developer specializing in creating accessible, "
    "performant WordPress components."
)

CODE_ONLY_SYSTEM_PROMPT = (
    "You are a code generator. Output only JavaScript code for a web component. "
    "Never include explanations, markdown prose, or text outside the code block."
)

# Appended to prompts for backends that tend to wrap code in prose
OUTPUT_CONTRACT = (
    "\n\nCRITICAL INSTRUCTIONS:\n"
    "- Return ONLY the JavaScript code, with no explanations before or after it.\n"
    "- Start the response with ```javascript and end it with ```.\n"
    "- Declare a class that extends HTMLElement and call super() first in its constructor.\n"
    "- Register it with customElements.define() using a hyphenated element name."
)

_BASE_REQUIREMENTS = [
    "Use Shadow DOM for encapsulation",
    "Make it a proper Web Component with customElements.define()",
    "Include all necessary CSS within the component",
    "Make it responsive and accessible",
]

CATEGORY_TEMPLATES: Dict[str, Dict[str, object]] = {
    "hero": {
        "description": "Hero section with headline, supporting copy and call-to-action",
        "element": "hero-section",
        "include": [
            "Large, attention-grabbing headline",
            "Supporting subheadline or description",
            "Primary call-to-action button",
            "Optional background image or gradient",
        ],
        "style": "modern and bold",
    },
    "cta": {
        "description": "Call-to-action section with compelling copy and buttons",
        "element": "cta-section",
        "include": [
            "Eye-catching headline",
            "Persuasive supporting text",
            "Primary action button (prominent)",
            "Optional secondary button",
            "Visual interest (background pattern, gradient, or accent)",
        ],
        "style": "modern and compelling",
    },
    "features": {
        "description": "Feature grid highlighting product capabilities",
        "element": "features-grid",
        "include": [
            "Section heading and short intro",
            "Grid of 3-6 feature cards with icon, title and description",
            "Hover states on cards",
        ],
        "style": "clean and professional",
    },
    "testimonial": {
        "description": "Customer testimonials with quotes and attribution",
        "element": "testimonial-section",
        "include": [
            "Quote text with visual quote styling",
            "Author name, role and optional avatar",
            "Support for multiple testimonials",
        ],
        "style": "warm and trustworthy",
    },
    "pricing": {
        "description": "Pricing table with plans and feature lists",
        "element": "pricing-table",
        "include": [
            "2-4 plan cards with name, price and billing period",
            "Feature list per plan",
            "Highlighted recommended plan",
            "Call-to-action button per plan",
        ],
        "style": "clear and conversion-focused",
    },
    "faq": {
        "description": "Frequently asked questions with expandable answers",
        "element": "faq-section",
        "include": [
            "Accordion of question and answer pairs",
            "Keyboard-accessible expand and collapse",
            "aria-expanded state on toggles",
        ],
        "style": "simple and readable",
    },
}


def _style_guidelines(style_content: Optional[str]) -> str:
    if not style_content:
        return ""
    return (
        "Brand Style Guidelines:\n```\n"
        f"{style_content}\n```\n\n"
        "Use the color palette, typography, and design principles from these brand guidelines.\n\n"
    )


def build_component_prompt(
    category: str,
    description: Optional[str] = None,
    brand: Optional[str] = None,
    style: Optional[str] = None,
    style_content: Optional[str] = None,
) -> str:
    """Prompt for a brand-new gem.

    A free-form description drives the prompt when given; otherwise the
    category's built-in template does.
    """
    if description:
        lines: List[str] = [f'Generate a web component based on this exact description: "{description}".\n']
        guidelines = _style_guidelines(style_content)
        if guidelines:
            lines.append(guidelines.rstrip("\n") + "\n")
        lines.append("Requirements:")
        lines.extend(f"- {req}" for req in _BASE_REQUIREMENTS)
        if brand:
            lines.append(f"- Include the brand name: {brand}")
        if style:
            lines.append(f"- Visual style: {style}")
        lines.append("\nReturn ONLY the JavaScript web component code in a code block.")
        return "\n".join(lines)

    tpl = CATEGORY_TEMPLATES.get(category.lower())
    if tpl is None:
        lines = [f"Generate a {category} web component.\n", "Requirements:"]
        lines.extend(f"- {req}" for req in _BASE_REQUIREMENTS)
    else:
        lines = [
            f"Generate a {tpl['description'].lower()} web component with these requirements:\n",
            f"1. Component name: {tpl['element']}",
            "2. Use Shadow DOM for encapsulation",
            "3. Include:",
        ]
        lines.extend(f"   - {item}" for item in tpl["include"])  # type: ignore[union-attr]
        lines.append("4. Accessibility: proper heading hierarchy, ARIA labels, good color contrast")
    guidelines = _style_guidelines(style_content)
    if guidelines:
        lines.append("\n" + guidelines.rstrip("\n"))
    if brand:
        lines.append(f"\nBrand: {brand}")
    default_style = tpl["style"] if tpl else "modern"
    lines.append(f"Style: {style or default_style}")
    lines.append("\nReturn ONLY the JavaScript web component code in a code block marked with ```javascript")
    return "\n".join(lines)


def build_shard_prompt(original_code: str, instruction: str) -> str:
    """Prompt asking a backend to reshape an existing component."""
    return (
        f'Given this existing web component code, modify it according to this request: "{instruction}"\n\n'
        "Original component code:\n"
        f"```javascript\n{original_code.strip()}\n```\n\n"
        "Important:\n"
        "- Maintain the same component structure and element name\n"
        "- Apply the requested modifications\n"
        "- Keep all existing functionality unless specifically asked to change"
        f"{OUTPUT_CONTRACT}"
    )


def with_output_contract(prompt: str) -> str:
    if OUTPUT_CONTRACT.strip() in prompt:
        return prompt
    return prompt + OUTPUT_CONTRACT
