# model/keys.py
# ---- per-user records
def k_profile(uid: str) -> str: return f"profile:{uid}"
def k_purchases(uid: str) -> str: return f"purchases:{uid}"
def k_preferences(uid: str) -> str: return f"preferences:{uid}"
def k_journal(uid: str, track: str) -> str: return f"journal:{uid}:{track}"
def k_journal_prefix(uid: str) -> str: return f"journal:{uid}:"


# ---- catalog / admin
def k_prompts(track_id: str) -> str: return f"prompts:{track_id}"
def k_code(code: str) -> str: return f"access_code:{code}"


ADMIN_EMAILS = "admin_emails"
PROFILE_PREFIX = "profile:"
PURCHASES_PREFIX = "purchases:"
CODE_PREFIX = "access_code:"


# ---- payments
def k_fulfilment(ref: str) -> str: return f"fulfilment:{ref}"
def k_idemp(evt: str) -> str: return f"idemp:{evt}"
def k_ps(psid: str) -> str: return f"mockpay:{psid}"


PS_PREFIX = "mockpay:"


# ---- local identity
def k_auth_user(uid: str) -> str: return f"auth_user:{uid}"
def k_auth_email(email: str) -> str: return f"auth_email:{email.lower()}"


AUTH_USER_PREFIX = "auth_user:"
