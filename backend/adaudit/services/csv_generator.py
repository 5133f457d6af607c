"""
CSV Generator — Renders decisions as Google Ads Editor bulk-import files.

One file per entity type, always emitted in the same order with rows sorted by
entity id, so the same set of decisions produces byte-identical files. Nothing
time-dependent goes into the CSV rows; the export timestamp only appears in the
README that ships alongside them.
"""

import csv
import io
import logging
import zipfile
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from adaudit.models import Decision

logger = logging.getLogger(__name__)

PREVIEW_ROWS = 5

_STATUS_MAP = {"enabled": "enabled", "paused": "paused", "removed": "removed"}
_MATCH_TYPE_MAP = {"exact": "Exact", "phrase": "Phrase", "broad": "Broad"}
# Action types that imply a status when after_value carries none
_ACTION_STATUS = {"pause": "paused", "enable": "enabled", "remove": "removed"}


@dataclass(frozen=True)
class GeneratedFile:
    filename: str
    content: str
    rows: int

    @property
    def preview_text(self) -> str:
        return "\n".join(self.content.splitlines()[: PREVIEW_ROWS + 1])


# ── Value formatting ──────────────────────────────────────────────────

def format_micros(micros) -> str:
    if not micros:
        return ""
    try:
        return f"{int(micros) / 1_000_000:.2f}"
    except (TypeError, ValueError):
        return ""


def map_status(status: Optional[str]) -> str:
    if not status:
        return ""
    return _STATUS_MAP.get(str(status).lower(), str(status).lower())


def map_match_type(match_type: Optional[str]) -> str:
    if not match_type:
        return ""
    return _MATCH_TYPE_MAP.get(str(match_type).lower(), str(match_type))


def _status(decision: Decision, after: dict) -> str:
    return map_status(after.get("status")) or _ACTION_STATUS.get(decision.action_type, "")


def _text(value) -> str:
    return "" if value is None else str(value)


# ── Row builders (one per entity type) ────────────────────────────────

def _campaign_row(d: Decision, after: dict, evidence: dict) -> dict:
    return {
        "Campaign": d.entity_name or evidence.get("campaign_name") or "",
        "Campaign state": _status(d, after),
        "Budget": format_micros(after.get("budget_micros")),
        "Bid Strategy Type": _text(after.get("bidding_strategy_type")),
        "Target CPA": format_micros(after.get("target_cpa_micros")),
        "Target ROAS": _text(after.get("target_roas")),
    }


def _ad_group_row(d: Decision, after: dict, evidence: dict) -> dict:
    return {
        "Campaign": _text(evidence.get("campaign_name")),
        "Ad Group": d.entity_name or "",
        "Ad Group state": _status(d, after),
        "Max CPC": format_micros(after.get("cpc_bid_micros")),
        "Target CPA": format_micros(after.get("target_cpa_micros")),
    }


def _keyword_row(d: Decision, after: dict, evidence: dict) -> dict:
    return {
        "Campaign": _text(evidence.get("campaign_name")),
        "Ad Group": _text(evidence.get("ad_group_name")),
        "Keyword": d.entity_name or _text(after.get("keyword_text")),
        "Match type": map_match_type(after.get("match_type")),
        "Max CPC": format_micros(after.get("cpc_bid_micros")),
        "Final URL": _text(after.get("final_url")),
        "Status": _status(d, after),
    }


def _negative_campaign_row(d: Decision, after: dict, evidence: dict) -> dict:
    return {
        "Campaign": _text(evidence.get("campaign_name")),
        "Negative keyword": d.entity_name or _text(after.get("keyword_text")),
        "Match type": map_match_type(after.get("match_type")),
    }


def _negative_ad_group_row(d: Decision, after: dict, evidence: dict) -> dict:
    return {
        "Campaign": _text(evidence.get("campaign_name")),
        "Ad Group": _text(evidence.get("ad_group_name")),
        "Negative keyword": d.entity_name or _text(after.get("keyword_text")),
        "Match type": map_match_type(after.get("match_type")),
    }


_AD_HEADLINES = 15
_AD_DESCRIPTIONS = 4


def _ad_row(d: Decision, after: dict, evidence: dict) -> dict:
    headlines = after.get("headlines") or []
    descriptions = after.get("descriptions") or []
    final_urls = after.get("final_urls") or []
    row = {
        "Campaign": _text(evidence.get("campaign_name")),
        "Ad Group": _text(evidence.get("ad_group_name")),
    }
    for i in range(_AD_HEADLINES):
        row[f"Headline {i + 1}"] = _asset_text(headlines, i)
    for i in range(_AD_DESCRIPTIONS):
        row[f"Description {i + 1}"] = _asset_text(descriptions, i)
    row["Final URL"] = _text(final_urls[0]) if final_urls else ""
    row["Path 1"] = _text(after.get("path1"))
    row["Path 2"] = _text(after.get("path2"))
    row["Status"] = _status(d, after)
    return row


def _asset_text(items: list, index: int) -> str:
    if index >= len(items):
        return ""
    item = items[index]
    if isinstance(item, dict):
        return _text(item.get("text"))
    return _text(item)


def _sitelink_row(d: Decision, after: dict, evidence: dict) -> dict:
    return {
        "Campaign": _text(evidence.get("campaign_name")),
        "Sitelink text": _text(after.get("asset_text")),
        "Description line 1": _text(after.get("description1")),
        "Description line 2": _text(after.get("description2")),
        "Final URL": _text(after.get("final_url")),
        "Status": _status(d, after),
    }


def _call_extension_row(d: Decision, after: dict, evidence: dict) -> dict:
    return {
        "Campaign": _text(evidence.get("campaign_name")),
        "Phone number": _text(after.get("phone_number")),
        "Country code": _text(after.get("country_code")) or "IT",
        "Status": _status(d, after),
    }


def _asset_row(d: Decision, after: dict, evidence: dict) -> dict:
    return {
        "Campaign": _text(evidence.get("campaign_name")),
        "Ad Group": _text(evidence.get("ad_group_name")),
        "Asset type": _text(after.get("asset_type")),
        "Asset": d.entity_name or _text(after.get("asset_text")),
        "Final URL": _text(after.get("final_url")),
        "Status": _status(d, after),
    }


def _search_term_row(d: Decision, after: dict, evidence: dict) -> dict:
    return {
        "Campaign": _text(evidence.get("campaign_name")),
        "Ad Group": _text(evidence.get("ad_group_name")),
        "Keyword": d.entity_name or _text(after.get("keyword_text")),
        "Match type": map_match_type(after.get("match_type")),
        "Max CPC": format_micros(after.get("cpc_bid_micros")),
        "Status": _status(d, after),
    }


RowBuilder = Callable[[Decision, dict, dict], dict]

# (entity_type, filename, headers, row builder) in output order
FILE_LAYOUTS: list[tuple[str, str, list[str], RowBuilder]] = [
    ("campaign", "campaigns.csv",
     ["Campaign", "Campaign state", "Budget", "Bid Strategy Type", "Target CPA", "Target ROAS"],
     _campaign_row),
    ("ad_group", "ad_groups.csv",
     ["Campaign", "Ad Group", "Ad Group state", "Max CPC", "Target CPA"],
     _ad_group_row),
    ("keyword", "keywords.csv",
     ["Campaign", "Ad Group", "Keyword", "Match type", "Max CPC", "Final URL", "Status"],
     _keyword_row),
    ("negative_keyword_campaign", "negative_keywords_campaign.csv",
     ["Campaign", "Negative keyword", "Match type"],
     _negative_campaign_row),
    ("negative_keyword_adgroup", "negative_keywords_adgroup.csv",
     ["Campaign", "Ad Group", "Negative keyword", "Match type"],
     _negative_ad_group_row),
    ("ad", "ads.csv",
     ["Campaign", "Ad Group"]
     + [f"Headline {i + 1}" for i in range(_AD_HEADLINES)]
     + [f"Description {i + 1}" for i in range(_AD_DESCRIPTIONS)]
     + ["Final URL", "Path 1", "Path 2", "Status"],
     _ad_row),
    ("sitelink", "sitelinks.csv",
     ["Campaign", "Sitelink text", "Description line 1", "Description line 2", "Final URL", "Status"],
     _sitelink_row),
    ("call_extension", "call_extensions.csv",
     ["Campaign", "Phone number", "Country code", "Status"],
     _call_extension_row),
    ("asset", "assets.csv",
     ["Campaign", "Ad Group", "Asset type", "Asset", "Final URL", "Status"],
     _asset_row),
    ("search_term", "search_terms.csv",
     ["Campaign", "Ad Group", "Keyword", "Match type", "Max CPC", "Status"],
     _search_term_row),
]


class CsvGenerator:
    def generate_files(self, decisions: list[Decision]) -> list[GeneratedFile]:
        """Group decisions by entity type and render one CSV per non-empty group."""
        grouped: dict[str, list[Decision]] = {}
        for decision in decisions:
            grouped.setdefault((decision.entity_type or "").lower(), []).append(decision)

        known = {layout[0] for layout in FILE_LAYOUTS}
        unknown = sorted(set(grouped) - known)
        if unknown:
            logger.warning(f"No export layout for entity types {unknown}; those decisions are skipped")

        files = []
        for entity_type, filename, headers, build_row in FILE_LAYOUTS:
            group = grouped.get(entity_type)
            if not group:
                continue
            ordered = sorted(group, key=lambda d: (d.entity_id or "", str(d.decision_group_id)))
            rows = [build_row(d, d.after_value or {}, d.evidence or {}) for d in ordered]
            files.append(GeneratedFile(filename=filename, content=_to_csv(headers, rows), rows=len(rows)))
        return files

    def build_archive(
        self,
        files: list[GeneratedFile],
        change_set_name: str,
        account_name: str,
        generated_at: datetime,
    ) -> bytes:
        """ZIP with README.md first, then the CSVs in manifest order."""
        stamp = generated_at.timetuple()[:6]
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as archive:
            readme = self.generate_readme(files, change_set_name, account_name, generated_at)
            archive.writestr(
                zipfile.ZipInfo("README.md", date_time=stamp), readme.encode("utf-8"), zipfile.ZIP_DEFLATED,
            )
            for f in files:
                archive.writestr(
                    zipfile.ZipInfo(f.filename, date_time=stamp), f.content.encode("utf-8"), zipfile.ZIP_DEFLATED,
                )
        return buffer.getvalue()

    def generate_readme(
        self,
        files: list[GeneratedFile],
        change_set_name: str,
        account_name: str,
        generated_at: datetime,
    ) -> str:
        lines = [
            "# Google Ads Editor Export",
            "=====================================",
            "",
            f"**Change Set:** {change_set_name}",
            f"**Account:** {account_name}",
            f"**Generated:** {generated_at.isoformat()}Z",
            "",
            "## Files Included",
            "",
        ]
        lines += [f"- **{f.filename}** - {f.rows} rows" for f in files]
        lines += [
            "",
            "## Import Instructions",
            "",
            "1. Open Google Ads Editor",
            f"2. Select your account: {account_name}",
            "3. Go to **Account** > **Import**",
            "4. Choose **From file**",
            "5. Select the CSV files one at a time",
            "6. Review the proposed changes",
            "7. Click **Post changes** when ready",
            "",
            "## Important Notes",
            "",
            "- Always review changes before posting",
            "- Make a backup of your account before applying changes",
            "- Test on a small subset first if you have many changes",
            "- Some changes may require additional review (e.g., ads need approval)",
            "- Once posted, mark the change set as applied so its decisions are closed",
            "",
        ]
        return "\n".join(lines)


def content_bytes(files: list[GeneratedFile]) -> bytes:
    """Concatenated file bytes the export hash is computed over."""
    return b"".join(f.content.encode("utf-8") for f in files)


def _to_csv(headers: list[str], rows: list[dict]) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=headers, lineterminator="\n", extrasaction="ignore")
    writer.writeheader()
    writer.writerows(rows)
    return buffer.getvalue()
