"""Webex message bodies for delivered reports.

Learn: Webex renders a subset of Markdown. Two layouts exist:
- attachment: short header, the exported file carries the content
- summary link: header, the first 500 chars of the executive summary,
  the list of sections, and a link back to the report in the web app
"""

from typing import Any

WORKFLOW_LABELS = {
    "ACCOUNT_INTELLIGENCE": "Account Intelligence Report",
    "COMPETITIVE_INTELLIGENCE": "Competitive Intelligence Report",
    "NEWS_DIGEST": "News Digest",
}

SUMMARY_KEYS = ("executive_summary", "overview", "news_narrative")
SUMMARY_MAX_CHARS = 500
FOOTER = "_Generated by IIoT Account Intelligence_"


def workflow_label(workflow_type: str) -> str:
    return WORKFLOW_LABELS.get(workflow_type, "Report")


def company_name(input_data: dict[str, Any] | None) -> str:
    data = input_data or {}
    if data.get("companyName"):
        return data["companyName"]
    if data.get("companyNames"):
        return ", ".join(data["companyNames"])
    return "Multiple Companies"


def format_section_name(key: str) -> str:
    """executive_summary -> Executive Summary"""
    return " ".join(word[:1].upper() + word[1:] for word in key.replace("_", " ").split(" "))


def _generated_on(report) -> str:
    generated = report.completed_at or report.created_at
    return generated.strftime("%Y-%m-%d") if generated else ""


def extract_summary(generated_content: dict[str, Any] | None) -> str:
    """First SUMMARY_MAX_CHARS of the first summary-like section present, or ''.

    Only the first section that exists is looked at. If it has no content
    the summary is empty; later keys are not tried.
    """
    if not generated_content:
        return ""
    section = next(
        (generated_content[key] for key in SUMMARY_KEYS if generated_content.get(key) is not None),
        None,
    )
    content = section.get("content") if isinstance(section, dict) else None
    if not content:
        return ""
    if len(content) > SUMMARY_MAX_CHARS:
        return content[:SUMMARY_MAX_CHARS] + "..."
    return content


def build_attachment_message(report) -> str:
    return (
        f"**{workflow_label(report.workflow_type)}**\n\n"
        f"**{report.title}**\n"
        f"**Company:** {company_name(report.input_data)}\n"
        f"**Generated:** {_generated_on(report)}\n\n"
        "_Report attached below._\n\n"
        "---\n"
        f"{FOOTER}"
    )


def build_summary_message(report, frontend_url: str) -> str:
    report_url = f"{frontend_url.rstrip('/')}/reports/{report.id}"

    parts = [
        f"## {workflow_label(report.workflow_type)}\n\n"
        f"**{report.title}**\n"
        f"**Company:** {company_name(report.input_data)}\n"
        f"**Generated:** {_generated_on(report)}"
    ]

    summary = extract_summary(report.generated_content)
    if summary:
        parts.append(f"### Summary\n{summary}")

    if report.generated_content:
        sections = "\n".join(
            f"- {format_section_name(key)}" for key in report.generated_content
        )
        parts.append(f"**Sections:**\n{sections}")

    parts.append(f"---\n[View Full Report]({report_url})\n\n{FOOTER}")
    return "\n\n".join(parts)
