"""
CeloCred — Tier Badges

Deterministic artifacts for the soulbound tier badge:
    - an SVG keyed only by tier
    - a base64 data URI of that SVG (the token URI)
    - a token id derived from keccak256(lower(address) ‖ tier)

Repeated mint attempts for the same address and tier are referentially
identical, so the ledger's token-id uniqueness rejects duplicates.
"""
import base64
from typing import Dict, Union

from eth_utils import keccak

from celocred.model import Address, Tier

TIER_STYLES: Dict[Tier, Dict[str, str]] = {
    Tier.BUILDER: {
        "color": "#35D07F",
        "bg_color": "#0F172A",
        "description": "Early Contributor",
    },
    Tier.CONTRIBUTOR: {
        "color": "#2DCCFF",
        "bg_color": "#0F172A",
        "description": "Active Contributor",
    },
    Tier.LEADER: {
        "color": "#FFB84D",
        "bg_color": "#0F172A",
        "description": "Community Leader",
    },
}

_SVG_TEMPLATE = """<svg width="300" height="300" viewBox="0 0 300 300" xmlns="http://www.w3.org/2000/svg">
  <rect width="300" height="300" fill="{bg_color}"/>
  <rect width="300" height="300" fill="none" stroke="{color}" stroke-width="3" rx="20"/>
  <text x="150" y="100" font-size="28" font-weight="bold" fill="{color}"
        text-anchor="middle" font-family="system-ui, sans-serif">CELOCRED</text>
  <text x="150" y="150" font-size="32" font-weight="bold" fill="{color}"
        text-anchor="middle" font-family="system-ui, sans-serif">{tier}</text>
  <text x="150" y="200" font-size="14" fill="{color}"
        text-anchor="middle" font-family="system-ui, sans-serif" opacity="0.8">{description}</text>
  <circle cx="150" cy="250" r="8" fill="{color}"/>
  <text x="150" y="268" font-size="12" fill="{color}"
        text-anchor="middle" font-family="system-ui, sans-serif" opacity="0.6">Verified on Celo</text>
</svg>"""


def generate_badge_svg(tier: Tier) -> str:
    if tier not in TIER_STYLES:
        raise ValueError(f"No badge exists for tier {tier.value}")
    return _SVG_TEMPLATE.format(tier=tier.value, **TIER_STYLES[tier])


def encode_badge_uri(svg: str) -> str:
    encoded = base64.b64encode(svg.encode("utf-8")).decode("ascii")
    return f"data:image/svg+xml;base64,{encoded}"


def badge_token_id(address: Union[Address, str], tier: Tier) -> int:
    """Full 256-bit keccak digest as an integer. Fits a uint256 without truncation."""
    lower = address.lower if isinstance(address, Address) else address.strip().lower()
    digest = keccak(text=lower + tier.value)
    return int.from_bytes(digest, "big")
