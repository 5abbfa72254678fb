"""Voicemail flow reached from the main menu by delegation."""

from __future__ import annotations

import logging

from ..flow import Goto, StateMachine
from ..twilio.twiml import Hangup, Record, Say

_LOGGER = logging.getLogger(__name__)

voicemail = StateMachine("voicemail", initial_state="prompt")


@voicemail.state("prompt")
def prompt(call_input, options):
    if options.get("retry"):
        intro = Say("We didn't get your message. Please try again after the beep.")
    else:
        intro = Say("Please leave a message after the beep. Press pound when finished.")
    return [intro, Record(max_length=120, finish_on_key="#", play_beep=True)]


@voicemail.state("saved")
def saved(call_input, options):
    return [Say("Your message has been saved. Goodbye."), Hangup()]


voicemail.goto("prompt", "prompt", input={"RecordingUrl": ""}, updates={"retry": True})


@voicemail.transition("prompt", present=("RecordingUrl",))
def store_recording(call_input, options):
    return Goto(
        "saved",
        {
            "recording_url": call_input["RecordingUrl"],
            "recording_duration": call_input.get("RecordingDuration"),
        },
    )


voicemail.goto("prompt", "prompt", updates={"retry": True})
voicemail.goto("saved", "saved")


@voicemail.on_complete
def log_voicemail(state, call_input, options):
    _LOGGER.info(
        "Voicemail call finished.",
        extra={
            "call_id": call_input.get("CallSid"),
            "state_name": state.name,
            "recording_url": options.get("recording_url"),
        },
    )
