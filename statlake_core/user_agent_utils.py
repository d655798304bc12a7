# User agent classification for live page views.
# Uses the 'user-agents' and 'httpagentparser' libraries for detection

from user_agents import parse as ua_parse
import httpagentparser


def classify(user_agent: str) -> dict:
    """
    Returns a dict with the three dimensions rollups break down by:
      - device_type: desktop / mobile / tablet / bot / unknown
      - browser: browser family (string or None)
      - os: operating system family (string or None)
    """
    if not user_agent or user_agent.strip() == '':
        return {'device_type': 'unknown', 'browser': None, 'os': None}
    ua = ua_parse(user_agent)
    hap = httpagentparser.detect(user_agent)
    browser = hap.get('browser', {}).get('name') or _family(ua.browser.family)
    os = hap.get('os', {}).get('name') or _family(ua.os.family)
    if ua.is_bot:
        device = 'bot'
    elif ua.is_tablet:
        device = 'tablet'
    elif ua.is_mobile:
        device = 'mobile'
    elif ua.is_pc:
        device = 'desktop'
    else:
        device = 'unknown'
    return {'device_type': device, 'browser': browser, 'os': os}


def _family(name):
    return None if not name or name == 'Other' else name
