import re
from dataclasses import dataclass, field
from urllib.parse import urljoin, urlparse

import httpx

from config.logging_config import get_logger
from services.audit_service.config import settings

logger = get_logger(__name__)


def _robots_url(root_url: str) -> str:
    p = urlparse(root_url)
    base = f"{p.scheme}://{p.netloc}"
    return urljoin(base, "/robots.txt")


def _rule_regex(path: str) -> re.Pattern:
    anchored = path.endswith("$")
    body = path[:-1] if anchored else path
    expr = ".*".join(re.escape(part) for part in body.split("*"))
    return re.compile(expr + ("$" if anchored else ""))


@dataclass
class RobotsRules:
    allowed: list[str] = field(default_factory=list)
    disallowed: list[str] = field(default_factory=list)
    sitemaps: list[str] = field(default_factory=list)
    available: bool = False

    def is_allowed(self, url: str) -> bool:
        p = urlparse(url)
        target = (p.path or "/") + (f"?{p.query}" if p.query else "")
        best_len = -1
        allowed = True
        for rules, verdict in ((self.disallowed, False), (self.allowed, True)):
            for path in rules:
                if not _rule_regex(path).match(target):
                    continue
                # longest rule wins, Allow wins a tie
                if len(path) > best_len or (len(path) == best_len and verdict):
                    best_len = len(path)
                    allowed = verdict
        return allowed


def _agent_token(user_agent: str) -> str:
    return user_agent.split("/", 1)[0].strip().lower()


def parse_robots(text: str, user_agent: str) -> RobotsRules:
    token = _agent_token(user_agent)
    rules = RobotsRules(available=True)
    specific = RobotsRules()
    generic = RobotsRules()

    group_agents: list[str] = []
    in_agent_run = False
    for raw in text.splitlines():
        line = raw.split("#", 1)[0].strip()
        if not line or ":" not in line:
            continue
        key, value = line.split(":", 1)
        key = key.strip().lower()
        value = value.strip()

        if key == "sitemap":
            if value:
                rules.sitemaps.append(value)
            continue
        if key == "user-agent":
            if not in_agent_run:
                group_agents = []
            group_agents.append(value.lower())
            in_agent_run = True
            continue

        in_agent_run = False
        if key not in ("allow", "disallow") or not value:
            continue
        targets = []
        if any(a and a != "*" and a in token for a in group_agents):
            targets.append(specific)
        if "*" in group_agents:
            targets.append(generic)
        for target in targets:
            (target.allowed if key == "allow" else target.disallowed).append(value)

    chosen = specific if (specific.allowed or specific.disallowed) else generic
    rules.allowed = chosen.allowed
    rules.disallowed = chosen.disallowed
    return rules


async def fetch_robots(client: httpx.AsyncClient, root_url: str, user_agent: str | None = None) -> RobotsRules:
    url = _robots_url(root_url)
    try:
        r = await client.get(url, follow_redirects=True, timeout=settings.default_timeout_s)
    except httpx.HTTPError as e:
        logger.info(f"robots.txt unavailable: {e}", extra={"url": url})
        return RobotsRules()
    if r.status_code >= 400:
        return RobotsRules()
    return parse_robots(r.text or "", user_agent or settings.user_agent)
