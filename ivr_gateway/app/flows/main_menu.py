"""Language-selection main menu answered for every new call."""

from __future__ import annotations

import logging

from ..flow import Goto, StateMachine
from ..twilio.twiml import Gather, Hangup, Say

_LOGGER = logging.getLogger(__name__)

INVALID_OPTION = "invalid"
SYSTEM_ERROR = "system"

_ERROR_PROMPTS = {
    INVALID_OPTION: "Sorry, that was not a valid option.",
    SYSTEM_ERROR: "Sorry, something went wrong. Let's start over.",
}

main_menu = StateMachine("main_menu", initial_state="greeting")


def _error_prompt(options) -> tuple[Say, ...]:
    message = _ERROR_PROMPTS.get(options.get("error"))
    return (Say(message),) if message else ()


@main_menu.state("greeting")
def greeting(call_input, options):
    return Gather(
        prompts=_error_prompt(options)
        + (
            Say("Thanks for calling. For English, press 1."),
            Say("Para español, oprima 2.", language="es-MX"),
            Say("To leave a message, press 3."),
        ),
        num_digits=1,
        timeout=5,
    )


@main_menu.state("english")
def english(call_input, options):
    return Gather(
        prompts=_error_prompt(options)
        + (Say("Press 1 to hear our opening hours, or 0 to return to the main menu."),),
        num_digits=1,
    )


@main_menu.state("spanish")
def spanish(call_input, options):
    return Gather(
        prompts=(
            Say(
                "Oprima 1 para escuchar nuestro horario, o 0 para volver al menú principal.",
                language="es-MX",
            ),
        ),
        num_digits=1,
    )


@main_menu.state("hours")
def hours(call_input, options):
    if options.get("language") == "es":
        return [Say("Abrimos de lunes a viernes, de nueve a cinco.", language="es-MX"), Hangup()]
    return [Say("We are open Monday through Friday, nine to five. Goodbye."), Hangup()]


@main_menu.default_state
def unknown_state(state_name, call_input, options):
    _LOGGER.warning("Main menu asked to render unknown state.", extra={"state_name": state_name})
    return [Say("We're sorry, this option is not available. Goodbye."), Hangup()]


main_menu.goto("greeting", "english", input={"Digits": "1"}, updates={"language": "en", "error": None})
main_menu.goto("greeting", "spanish", input={"Digits": "2"}, updates={"language": "es", "error": None})
main_menu.delegate("greeting", "voicemail", input={"Digits": "3"}, updates={"error": None})
main_menu.goto("greeting", "greeting", updates={"error": INVALID_OPTION})

for _language_state in ("english", "spanish"):
    main_menu.goto(_language_state, "hours", input={"Digits": "1"}, updates={"error": None})
    main_menu.goto(_language_state, "greeting", input={"Digits": "0"}, updates={"error": None})
    main_menu.goto(_language_state, _language_state, updates={"error": INVALID_OPTION})


@main_menu.on_transition_error
def recover_to_greeting(error, state_name, call_input, options):
    return Goto("greeting", {"error": SYSTEM_ERROR})


@main_menu.on_complete
def log_completed_call(state, call_input, options):
    _LOGGER.info(
        "Main menu call finished.",
        extra={
            "call_id": call_input.get("CallSid"),
            "state_name": state.name,
            "language": options.get("language"),
            "duration": call_input.get("CallDuration"),
        },
    )
