import asyncio
import logging
import signal
import sys
from datetime import datetime, timezone

from aiohttp import web
from telegram import Update
from telegram import __version__ as tg_version
from telegram.ext import Application, CallbackQueryHandler, CommandHandler, ContextTypes, MessageHandler, filters

from . import config, yookassa_gateway
from .conversation import KIND_REPLY, START_TEXT
from .errors import CooldownRejected, ProviderError
from .llm import LLMClient
from .notify import BUY_PREFIX, TelegramNotifier, pay_keyboard, plans_keyboard
from .plans import PlanCatalog
from .services import Services
from .sheets import SheetsPersistence, open_spreadsheet
from .store import SessionStore
from .tracking import ConversionTracker

logger = logging.getLogger("personabot")

COOLDOWN_TEXT = "Calma… seu link já está sendo preparado 😌"
PROVIDER_ERROR_TEXT = "Não consegui gerar o link de pagamento agora. Tenta de novo em instantes?"
CHECKOUT_TEXT = "Aqui está seu link de pagamento 💋 Assim que confirmar, eu te aviso."
# new text messages only; edits carry no update.message
CHAT_TEXT = filters.UpdateType.MESSAGE & filters.TEXT & ~filters.COMMAND

def _services(context: ContextTypes.DEFAULT_TYPE) -> Services:
    return context.application.bot_data['services']

def _fmt_ms(ms) -> str:
    if not ms:
        return '-'
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')

def _is_admin(update: Update) -> bool:
    return bool(update.effective_user) and update.effective_user.id == config.ADMIN_CHAT_ID

# === HANDLERS ===
async def start(update: Update, context: ContextTypes.DEFAULT_TYPE):
    chat = update.effective_chat
    if not chat:
        return
    _services(context).store.session(chat.id)
    await update.message.reply_text(START_TEXT)

async def handle_message(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if getattr(update.effective_user, 'is_bot', False):
        return
    chat_id = update.effective_chat.id
    text = update.message.text or ''
    logger.info(f"msg from {chat_id}: {text[:200]}")

    reply = await _services(context).chat.handle_message(chat_id, text)
    if reply.plans:
        await update.message.reply_text(reply.text, reply_markup=plans_keyboard(reply.plans))
    elif reply.pay_url:
        await update.message.reply_text(reply.text, reply_markup=pay_keyboard(reply.pay_url))
    elif reply.kind == KIND_REPLY and reply.media_url:
        await update.message.reply_text(reply.text)
        try:
            await update.message.reply_photo(reply.media_url)
        except Exception as e:
            logger.warning(f"Media send error for {chat_id}: {e}")
    else:
        await update.message.reply_text(reply.text)

async def plans_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE):
    svc = _services(context)
    reply = svc.chat.paywall(update.effective_chat.id)
    if reply.pay_url:
        await update.message.reply_text(reply.text, reply_markup=pay_keyboard(reply.pay_url))
    else:
        await update.message.reply_text(
            "Escolhe como você quer ficar comigo:", reply_markup=plans_keyboard(svc.catalog.all())
        )

async def status_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE):
    svc = _services(context)
    st = svc.store.session(update.effective_chat.id)
    now = svc.store.now()
    if st.is_entitled(now):
        plan = svc.catalog.get_plan(st.entitled_plan_id)
        await update.message.reply_text(f"Plano {plan.title} ativo até {_fmt_ms(st.entitlement_expiry)}")
    elif st.pending_checkout is not None:
        await update.message.reply_text("Pagamento aguardando confirmação.",
                                        reply_markup=pay_keyboard(st.pending_checkout.pay_url))
    else:
        await update.message.reply_text("Nenhum plano ativo. Use /plans para ver as opções.")

async def on_buy(update: Update, context: ContextTypes.DEFAULT_TYPE):
    cq = update.callback_query
    if not cq:
        return
    data = cq.data or ''
    if not data.startswith(BUY_PREFIX):
        return
    await cq.answer()
    chat_id = update.effective_chat.id
    plan_id = data[len(BUY_PREFIX):]
    try:
        checkout = await _services(context).issuer.issue_checkout(chat_id, plan_id)
    except CooldownRejected:
        await cq.message.reply_text(COOLDOWN_TEXT)
        return
    except ProviderError as e:
        logger.warning(f"Checkout error for {chat_id}: {e}")
        await cq.message.reply_text(PROVIDER_ERROR_TEXT)
        return
    await cq.message.reply_text(CHECKOUT_TEXT, reply_markup=pay_keyboard(checkout.pay_url))

# === ADMIN ===
async def admin_stats(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not _is_admin(update):
        return
    svc = _services(context)
    now = svc.store.now()
    sessions = svc.store.sessions()
    counts: dict[str, int] = {}
    for st in sessions:
        key = st.state(now).value
        counts[key] = counts.get(key, 0) + 1
    lines = [f"👥 Sessions: {len(sessions)}"] + [f"{k}: {v}" for k, v in sorted(counts.items())]
    lines.append(f"⏳ Pending checkouts: {len(svc.store.pending_records())}")
    await update.message.reply_text("📊 Stats:\n" + "\n".join(lines))

async def admin_state(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not _is_admin(update):
        return
    if not context.args:
        await update.message.reply_text("Uso: /state <chat_id>")
        return
    try:
        sid = int(context.args[0])
    except ValueError:
        await update.message.reply_text("chat_id inválido")
        return
    svc = _services(context)
    st = svc.store.peek(sid)
    if not st:
        await update.message.reply_text("Sessão não encontrada em memória")
        return
    pc = st.pending_checkout
    lines = [
        f"state: {st.state(svc.store.now()).value}",
        f"entitlement_expiry: {_fmt_ms(st.entitlement_expiry)}",
        f"entitled_plan_id: {st.entitled_plan_id}",
        f"pending_checkout: {pc.checkout_id if pc else None}",
        f"awaiting_payment: {st.awaiting_payment}",
        f"message_count: {st.message_count}",
        f"escalation_counter: {st.escalation_counter}",
        f"last_checkout_issued_at: {_fmt_ms(st.last_checkout_issued_at)}",
    ]
    await update.message.reply_text("\n".join(lines))

async def admin_reset(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not _is_admin(update):
        return
    if not context.args:
        await update.message.reply_text("Uso: /reset <chat_id>")
        return
    try:
        sid = int(context.args[0])
    except ValueError:
        await update.message.reply_text("chat_id inválido")
        return
    state = await _services(context).store.reset(sid)
    await update.message.reply_text(f"✅ {sid} reset, state={state.value}")

async def admin_sweep(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not _is_admin(update):
        return
    removed = await _services(context).janitor.sweep()
    await update.message.reply_text(f"🧹 Pending removed: {removed}")

async def admin_backup(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not _is_admin(update):
        return
    svc = _services(context)
    persistence = svc.store.persistence
    if not persistence:
        await update.message.reply_text("Persistence desligada")
        return
    saved = 0
    for st in svc.store.sessions():
        if st.entitlement_expiry is None:
            continue
        try:
            await asyncio.to_thread(persistence.save_entitlement, st.entitlement_row())
            saved += 1
        except Exception as e:
            logger.warning(f"Backup error for {st.session_id}: {e}")
    await update.message.reply_text(f"Salvos: {saved}")

async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE):
    logger.exception("Unhandled exception in handler", exc_info=context.error)

def register_handlers(application: Application):
    application.add_handler(CommandHandler("start", start))
    application.add_handler(CommandHandler("plans", plans_cmd))
    application.add_handler(CommandHandler("status", status_cmd))
    application.add_handler(CallbackQueryHandler(on_buy, pattern=rf'^{BUY_PREFIX}'))
    application.add_handler(MessageHandler(CHAT_TEXT, handle_message))
    application.add_handler(CommandHandler("stats", admin_stats))
    application.add_handler(CommandHandler("state", admin_state))
    application.add_handler(CommandHandler("reset", admin_reset))
    application.add_handler(CommandHandler("sweep", admin_sweep))
    application.add_handler(CommandHandler("backup_states", admin_backup))
    application.add_error_handler(error_handler)

# === HTTP ===
RETURN_PAGE = """
<!DOCTYPE html>
<html lang="pt-BR"><head>
<meta charset="utf-8" />
<meta name="viewport" content="width=device-width, initial-scale=1" />
<title>Pagamento</title>
<script>
!function(){var t=document.createElement("script");t.type="text/javascript",t.async=!0,t.src="https://vk.com/js/api/openapi.js?168";var e=document.getElementsByTagName("script")[0];e.parentNode.insertBefore(t,e)}();
</script>
<script>
window.addEventListener('load', function(){
  if ('REPLACE_VK_PIXEL_ID' && typeof VK !== 'undefined' && VK.Retargeting) {
    try { VK.Retargeting.Init('REPLACE_VK_PIXEL_ID'); VK.Retargeting.Hit(); } catch(e) {}
  }
});
</script>
</head>
<body style="font-family: system-ui, -apple-system, Segoe UI, Roboto, Arial; margin:40px;">
  <h2>Obrigada!</h2>
  <p>Se o pagamento foi aprovado, seu acesso já está liberado no Telegram.</p>
  <p>Pode fechar esta página.</p>
</body></html>
"""

def build_web_app(services: Services, application: Application | None = None, token_path: str | None = None,
                  webhook_secret: str | None = None) -> web.Application:
    aio = web.Application()

    async def handle_health(request: web.Request):
        return web.Response(text='OK')

    async def _process_update_payload(data: dict):
        try:
            upd = Update.de_json(data, application.bot)
            await application.process_update(upd)
        except Exception as e:
            logger.exception(f"Update processing error: {e}")

    async def handle_tg(request: web.Request):
        data = await request.json()
        logger.info("Webhook hit: received update (token path)")
        await _process_update_payload(data)
        return web.Response(text='OK')

    async def handle_tg_short(request: web.Request):
        if webhook_secret:
            got = request.headers.get('X-Telegram-Bot-Api-Secret-Token')
            if got != webhook_secret:
                logger.warning("Webhook short path: invalid secret token")
                return web.Response(status=403, text='Forbidden')
        data = await request.json()
        logger.info("Webhook hit: received update (short path)")
        await _process_update_payload(data)
        return web.Response(text='OK')

    async def handle_payment_webhook(request: web.Request):
        body = {}
        if request.can_read_body:
            try:
                body = await request.json()
            except Exception:
                logger.warning("Payment webhook: body is not json, using query only")
                body = {}
        query = dict(request.query)
        # acknowledge now; the provider redelivers if reconciliation drops it
        services.spawn(services.reconciler.handle_notification(body, query), name='reconcile')
        return web.Response(text='OK')

    async def handle_return(request: web.Request):
        html = RETURN_PAGE.replace('REPLACE_VK_PIXEL_ID', config.VK_PIXEL_ID)
        return web.Response(text=html, content_type='text/html')

    aio.router.add_get('/health', handle_health)
    aio.router.add_post('/payment-webhook', handle_payment_webhook)
    aio.router.add_post('/yookassa/webhook', handle_payment_webhook)
    aio.router.add_get('/pay/return', handle_return)
    if application is not None:
        if token_path:
            aio.router.add_post(token_path, handle_tg)    # token path
        aio.router.add_post('/webhook', handle_tg_short)  # short alias path
    return aio

def build_services(application: Application) -> Services:
    persistence = None
    if config.GOOGLE_CREDENTIALS_JSON:
        try:
            persistence = SheetsPersistence(open_spreadsheet())
        except Exception as e:
            logger.warning(f"Google Sheets init error: {e}")
    store = SessionStore(persistence=persistence)
    try:
        store.restore()
    except Exception as e:
        logger.warning(f"States restore error: {e}")

    catalog = PlanCatalog()
    if config.PLANS_JSON:
        try:
            catalog = PlanCatalog.from_json(config.PLANS_JSON)
        except Exception as e:
            logger.warning(f"PLANS_JSON ignored: {e}")

    yookassa_gateway.configure()
    notifier = TelegramNotifier(application.bot)
    return Services(
        store=store,
        catalog=catalog,
        gateway=yookassa_gateway.YooKassaGateway(),
        llm=LLMClient(),
        notifier=notifier,
        tracker=ConversionTracker(notifier=notifier),
    )

# === STARTUP ===
def main():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s | %(levelname)s | %(name)s | %(message)s'
    )
    logger.info("=== PERSONA BOT ===")
    logger.info(f"PTB: {tg_version}")
    config.log_startup_summary()

    if not config.BOT_TOKEN or not config.LLM_API_KEY:
        logger.error("BOT_TOKEN / LLM_API_KEY not set")
        sys.exit(1)

    async def run_server():
        # Build application without Updater (custom webhook server)
        application = Application.builder().updater(None).token(config.BOT_TOKEN).build()
        register_handlers(application)
        services = build_services(application)
        application.bot_data['services'] = services

        base_url = config.WEBHOOK_BASE_URL
        if not base_url:
            raise RuntimeError('WEBHOOK_BASE_URL/RENDER_EXTERNAL_URL not set')
        url_path = f"/webhook/{config.BOT_TOKEN}"
        webhook_url = base_url.rstrip('/') + url_path
        short_url = base_url.rstrip('/') + '/webhook'
        logger.info(f"Webhook on port {config.PORT}")

        aio = build_web_app(services, application, token_path=url_path, webhook_secret=config.WEBHOOK_SECRET)

        await application.initialize()
        await application.start()
        runner = web.AppRunner(aio)
        await runner.setup()
        site = web.TCPSite(runner, '0.0.0.0', config.PORT)
        await site.start()
        logger.info('Aiohttp server started')

        # Prefer short path with secret if configured; fallback to token path
        expected_url = short_url if config.WEBHOOK_SECRET else webhook_url

        async def set_webhook():
            if config.WEBHOOK_SECRET:
                await application.bot.set_webhook(short_url, secret_token=config.WEBHOOK_SECRET,
                                                  drop_pending_updates=False, allowed_updates=Update.ALL_TYPES)
            else:
                await application.bot.set_webhook(webhook_url, drop_pending_updates=False,
                                                  allowed_updates=Update.ALL_TYPES)

        try:
            await set_webhook()
            logger.info(f"Webhook set ({'short path with secret' if config.WEBHOOK_SECRET else 'token path'})")
        except Exception as e:
            logger.warning(f"Initial set_webhook failed: {e}")

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGTERM, stop_event.set)
            loop.add_signal_handler(signal.SIGINT, stop_event.set)
        except NotImplementedError:
            # Signals not available (e.g., on Windows)
            pass

        async def webhook_self_heal():
            interval = config.JANITOR_INTERVAL_MS / 1000
            while True:
                try:
                    await asyncio.sleep(interval)
                    info = await application.bot.get_webhook_info()
                    if not info.url or info.url != expected_url:
                        await set_webhook()
                        logger.info("Webhook self-healed")
                except asyncio.CancelledError:
                    break
                except Exception as he:
                    logger.warning(f"Webhook health loop error: {he}")

        heal_task = asyncio.create_task(webhook_self_heal())
        janitor_task = asyncio.create_task(services.janitor.run_forever())

        try:
            await stop_event.wait()
        finally:
            try:
                await application.bot.delete_webhook(drop_pending_updates=False)
            except Exception as e:
                logger.warning(f"delete_webhook error: {e}")
            for task in (heal_task, janitor_task):
                task.cancel()
            await asyncio.gather(heal_task, janitor_task, return_exceptions=True)
            await services.drain()
            await application.stop()
            await application.shutdown()
            await runner.cleanup()

    try:
        asyncio.run(run_server())
    except Exception as e:
        logger.exception(f"Startup error: {e}")
        sys.exit(1)

if __name__ == '__main__':
    main()
