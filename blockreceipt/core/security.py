import json
from typing import Dict, Optional, Set
from fastapi import Header, HTTPException, Request

from blockreceipt.core.config import config


def _get_token_map() -> Dict[str, str]:
    """
    解析 Token -> 角色映射，支持:
    1. API_TOKENS 为 JSON: {"token1": "role1"}
    2. API_TOKENS 为逗号分隔列表，角色统一取 API_ROLE
    3. 回退到单 Token: API_TOKEN + API_ROLE
    """
    tokens_raw = config.get("API_TOKENS")
    if tokens_raw:
        if tokens_raw.strip().startswith("{"):
            try:
                parsed = json.loads(tokens_raw)
                if isinstance(parsed, dict):
                    return {str(k): str(v) for k, v in parsed.items()}
            except ValueError:
                pass
        else:
            default_role = config.get("API_ROLE", "public")
            return {t.strip(): default_role for t in tokens_raw.split(",") if t.strip()}

    single_token = config.get("API_TOKEN")
    if single_token:
        return {single_token: config.get("API_ROLE", "public")}
    return {}


def verify_token(header_val: Optional[str]) -> bool:
    token_map = _get_token_map()
    if not token_map:
        # 未配置任何 Token 时开放访问
        return True
    if not header_val:
        return False
    return header_val in token_map


def resolve_role(token: Optional[str]) -> str:
    if not token:
        return "public"
    return _get_token_map().get(token, "public")


async def token_dependency(request: Request, x_api_token: Optional[str] = Header(None, alias="X-API-Token")):
    if not verify_token(x_api_token):
        raise HTTPException(status_code=401, detail="Unauthorized")

    ip = request.headers.get("X-Forwarded-For") or (request.client.host if request.client else "")
    return {"ip": ip, "token": x_api_token, "role": resolve_role(x_api_token)}


def allowed_roles(key: str) -> Set[str]:
    """逗号分隔的角色白名单，未配置表示不限制"""
    raw = config.get(key) or ""
    return {r.strip() for r in raw.split(",") if r.strip()}


def check_role(ident: Dict[str, str], key: str):
    roles = allowed_roles(key)
    if roles and ident.get("role") not in roles:
        raise HTTPException(status_code=403, detail="Forbidden")
