# /chatflow/config/strings.py

# This file contains all user-facing strings the engine sends on its own behalf,
# making them easy to manage, update, and eventually localize without changing
# execution logic.

# Terminal failure: always offers the subject a next action
FINAL_ERROR_MESSAGE = (
    "😔 Sorry, something went wrong while processing your request.\n\n"
    "You can start over or ask for help."
)

AUTH_REQUIRED_MESSAGE = (
    "🔒 We couldn't verify your access for this step.\n\n"
    "Please sign in again and restart the conversation."
)

VALIDATION_REPROMPT_MESSAGE = "⚠️ That doesn't look quite right. Please check your answer and try again."

FALLBACK_NOTICE_MESSAGE = "We ran into a problem, so let's try another way. 🙏"

# Wait timeouts, keyed by the wait type that expired
WAIT_TIMEOUT_MESSAGES = {
    "input": "⏰ We didn't hear back from you in time. Send /start whenever you're ready to continue.",
    "callback": "⏰ That menu has expired. Send /start to get a fresh one.",
    "contact": "⏰ We didn't receive your contact in time. Send /start to try again.",
}
DEFAULT_TIMEOUT_MESSAGE = "⏰ This conversation timed out. Send /start to begin again."

# Prompt used by request-contact actions when the node has no text of its own
REQUEST_CONTACT_PROMPT = "📱 Please share your phone number using the button below."
SHARE_CONTACT_BUTTON = "📱 Share phone number"

# Controls attached to terminal failure messages
RESTART_BUTTON_TEXT = "🔄 Start over"
HELP_BUTTON_TEXT = "❓ Help"
RESTART_CALLBACK_DATA = "cmd_start"
HELP_CALLBACK_DATA = "cmd_help"

RECOVERY_CONTROLS = [
    [
        {"text": RESTART_BUTTON_TEXT, "callback_data": RESTART_CALLBACK_DATA},
        {"text": HELP_BUTTON_TEXT, "callback_data": HELP_CALLBACK_DATA},
    ]
]
