"""Telegram application wiring for the Study Assistant."""

from telegram.ext import (
    Application,
    ApplicationBuilder,
    CallbackQueryHandler,
    CommandHandler,
    MessageHandler,
    filters,
)

from .agent import StudyAssistantAgent


def build_application(bot_token: str, agent: StudyAssistantAgent) -> Application:
    """Register every command and callback handler on a new application."""
    application = ApplicationBuilder().token(bot_token).build()
    commands = {
        "start": agent.handle_start,
        "quick": agent.handle_quick,
        "reset": agent.handle_reset,
        "history": agent.handle_history,
        "favorites": agent.handle_favorites,
        "add": agent.handle_add,
        "generate": agent.handle_generate,
        "review": agent.handle_review,
        "due": agent.handle_due,
        "note": agent.handle_note,
        "notes": agent.handle_notes,
        "findnote": agent.handle_find_note,
        "delnote": agent.handle_delete_note,
        "plan": agent.handle_plan,
        "plans": agent.handle_plans,
        "stats": agent.handle_stats,
    }
    for command, callback in commands.items():
        application.add_handler(CommandHandler(command, callback))

    application.add_handler(CallbackQueryHandler(agent.handle_take_flashcard, pattern="^fc_take$"))
    application.add_handler(CallbackQueryHandler(agent.handle_show_flashcard, pattern=r"^fc_show:"))
    application.add_handler(CallbackQueryHandler(agent.handle_rate_flashcard, pattern=r"^fc_rate:"))
    application.add_handler(CallbackQueryHandler(agent.handle_delete_flashcard, pattern=r"^fc_delete:"))
    application.add_handler(CallbackQueryHandler(agent.handle_favorite_question, pattern=r"^q_fav:"))
    application.add_handler(CallbackQueryHandler(agent.handle_show_plan, pattern=r"^sp_show:"))
    application.add_handler(CallbackQueryHandler(agent.handle_plan_task, pattern=r"^sp_task:"))
    application.add_handler(CallbackQueryHandler(agent.handle_plan_status, pattern=r"^sp_(pause|resume):"))
    application.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, agent.handle_message))
    return application
