import os
import logging

logger = logging.getLogger("personabot.config")


def _csv(name: str, default: str) -> list[str]:
    return [x.strip().lower() for x in os.environ.get(name, default).split(',') if x.strip()]


def _flag(name: str, default: str = '0') -> bool:
    return os.environ.get(name, default) in ('1', 'true', 'True')


BOT_TOKEN = os.environ.get('BOT_TOKEN')
ADMIN_CHAT_ID = int(os.environ.get('ADMIN_CHAT_ID', '0'))
WEBHOOK_BASE_URL = os.environ.get('WEBHOOK_BASE_URL') or os.environ.get('RENDER_EXTERNAL_URL')
WEBHOOK_SECRET = os.environ.get('WEBHOOK_SECRET')  # optional secret for short webhook
PORT = int(os.environ.get('PORT', '8080'))

# LLM (OpenAI-compatible chat completions)
LLM_API_KEY = os.environ.get('LLM_API_KEY') or os.environ.get('OPENAI_API_KEY')
LLM_API_URL = os.environ.get('LLM_API_URL', 'https://api.openai.com/v1/chat/completions')
LLM_MODEL = os.environ.get('LLM_MODEL', 'gpt-4o-mini')
LLM_TEMPERATURE = float(os.environ.get('LLM_TEMPERATURE', '0.9'))
LLM_TIMEOUT_SECS = float(os.environ.get('LLM_TIMEOUT_SECS', '30'))
PERSONA_PROMPT = os.environ.get(
    'PERSONA_PROMPT',
    "Você é uma mulher sedutora, envolvente, educada e provocante, mas nunca explícita."
)
MAX_REPLY_CHARS = int(os.environ.get('MAX_REPLY_CHARS', '1200'))
HISTORY_WINDOW = int(os.environ.get('HISTORY_WINDOW', '15'))

# Payments (YooKassa)
YOOKASSA_ACCOUNT_ID = os.environ.get('YOOKASSA_ACCOUNT_ID')
YOOKASSA_SECRET_KEY = os.environ.get('YOOKASSA_SECRET_KEY')
YOOKASSA_RETURN_URL = os.environ.get('YOOKASSA_RETURN_URL') or (WEBHOOK_BASE_URL or '').rstrip('/') + '/pay/return'
YOOKASSA_TIMEOUT_MS = int(os.environ.get('YOOKASSA_TIMEOUT_MS', '10000'))
PAYMENT_CURRENCY = os.environ.get('PAYMENT_CURRENCY', 'RUB')
TAX_SYSTEM_CODE = int(os.environ.get('TAX_SYSTEM_CODE', '1'))
VAT_CODE = int(os.environ.get('VAT_CODE', '1'))  # consult your accountant
RECEIPT_EMAIL = os.environ.get('RECEIPT_EMAIL')  # shop-side receipt address, optional
DEFAULT_PLAN_ID = os.environ.get('DEFAULT_PLAN_ID', 'p12h')
PLANS_JSON = os.environ.get('PLANS_JSON')  # overrides the built-in plan table

# Provider retry policy
PROVIDER_MAX_ATTEMPTS = int(os.environ.get('PROVIDER_MAX_ATTEMPTS', '3'))
PROVIDER_BACKOFF_BASE = float(os.environ.get('PROVIDER_BACKOFF_BASE', '0.5'))
PROVIDER_RETRY_STATUSES = frozenset(
    int(x) for x in os.environ.get('PROVIDER_RETRY_STATUSES', '429,503').split(',') if x.strip().isdigit()
)

# Checkout / janitor timings (seconds in env, milliseconds internally)
CHECKOUT_COOLDOWN_MS = int(float(os.environ.get('CHECKOUT_COOLDOWN_SECS', '30')) * 1000)
PENDING_TTL_MS = int(float(os.environ.get('PENDING_TTL_SECS', str(60 * 60))) * 1000)
JANITOR_INTERVAL_MS = int(float(os.environ.get('JANITOR_INTERVAL_SECS', '300')) * 1000)

# Usage gate
ESCALATION_THRESHOLD = int(os.environ.get('ESCALATION_THRESHOLD', '3'))
ESCALATION_KEYWORDS = _csv(
    'ESCALATION_KEYWORDS',
    'foto,fotos,nude,nudes,pelada,safada,tesão,tesao,excitad,gostosa,vídeo,video,chamada'
)
UPSELL_BAND_MIN = int(os.environ.get('UPSELL_BAND_MIN', '8'))
UPSELL_BAND_MAX = int(os.environ.get('UPSELL_BAND_MAX', '12'))
UPSELL_KEYWORDS = _csv(
    'UPSELL_KEYWORDS',
    'mais,exclusiv,privad,premium,vip,segredo,só pra mim,conteúdo,conteudo'
)
UPSELL_LOOKBACK = int(os.environ.get('UPSELL_LOOKBACK', '4'))
MEDIA_KEYWORDS = _csv('MEDIA_KEYWORDS', 'foto,fotos,imagem,selfie,vídeo,video,áudio,audio')
PREMIUM_MEDIA_URLS = [x.strip() for x in os.environ.get('PREMIUM_MEDIA_URLS', '').split(',') if x.strip()]

# Persistence (Google Sheets, optional)
GOOGLE_CREDENTIALS_JSON = os.environ.get('GOOGLE_CREDENTIALS')
GOOGLE_SHEET_NAME = os.environ.get('GOOGLE_SHEET_NAME', 'PersonaBot_State')

# Conversion tracking
CONVERSION_WEBHOOK_URL = os.environ.get('CONVERSION_WEBHOOK_URL')
VK_PIXEL_ID = os.environ.get('VK_PIXEL_ID', '')
NOTIFY_ADMIN_ON_PURCHASE = _flag('NOTIFY_ADMIN_ON_PURCHASE', '1')


def log_startup_summary():
    logger.info(f"BOT_TOKEN: {'✅' if BOT_TOKEN else '❌'} | LLM_API_KEY: {'✅' if LLM_API_KEY else '❌'}")
    logger.info(f"ADMIN_CHAT_ID: {ADMIN_CHAT_ID} | GOOGLE_CREDENTIALS: {'✅' if GOOGLE_CREDENTIALS_JSON else '❌'}")
    logger.info(
        f"YOOKASSA: {'✅' if (YOOKASSA_ACCOUNT_ID and YOOKASSA_SECRET_KEY) else '❌'} | "
        f"cooldown={CHECKOUT_COOLDOWN_MS}ms pending_ttl={PENDING_TTL_MS}ms"
    )
    logger.info(
        f"Gate: escalation_threshold={ESCALATION_THRESHOLD} upsell_band={UPSELL_BAND_MIN}..{UPSELL_BAND_MAX}"
    )
