"""
rewardtrack.services.embeds — Discord embed builders for tracker notifications
===============================================================================

All embed construction lives here so the notifier only has to deliver.
"""

from __future__ import annotations

import discord

TOAST_ICONS: dict[str, str] = {
    "level_up": "\U0001f389",        # 🎉
    "trust_up": "\U0001f4c8",        # 📈
    "trust_down": "\U0001f4c9",      # 📉
    "referral": "\U0001f91d",        # 🤝
    "challenge": "\U0001f3c6",       # 🏆
}


def build_toast_embed(
    title: str,
    description: str,
    *,
    destructive: bool = False,
) -> discord.Embed:
    """Build the embed for one user-facing toast.

    Destructive toasts (failed writes) are red; everything else is blurple.
    """
    color = discord.Color.red() if destructive else discord.Color.blurple()
    embed = discord.Embed(title=title, description=description, color=color)
    if destructive:
        embed.set_footer(text="Nothing was changed. Please try again.")
    return embed


def webhook_payload(embed: discord.Embed, *, username: str | None = None) -> dict:
    """Wrap *embed* in a Discord webhook execute body."""
    body: dict = {"embeds": [embed.to_dict()]}
    if username:
        body["username"] = username
    return body
