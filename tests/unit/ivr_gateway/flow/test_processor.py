from __future__ import annotations

import asyncio

import pytest

from ivr_gateway.app.flow import (
    CallEventKind,
    CallProcessor,
    CallSessionStore,
    Delegate,
    EventBus,
    FatalTransitionError,
    Goto,
    InvalidInputError,
    MachineRegistry,
    RuleEngine,
    StateMachine,
    UndefinedTransitionError,
)

from .._fakes import (
    RecordingRenderer,
    RecordingSubscriber,
    YieldingSessionStore,
    build_greeting_machine,
    run,
    twilio_input,
)


def _processor(
    *machines: StateMachine,
    store: CallSessionStore | None = None,
) -> tuple[CallProcessor, EventBus, RecordingSubscriber]:
    bus = EventBus()
    subscriber = RecordingSubscriber()
    bus.subscribe(subscriber)
    processor = CallProcessor(
        engine=RuleEngine(MachineRegistry(machines), renderer=RecordingRenderer()),
        store=store or CallSessionStore(),
        events=bus,
    )
    return processor, bus, subscriber


async def _settle(bus: EventBus) -> None:
    await bus.drain()
    await bus.close()


def test_new_call_renders_initial_state_and_creates_one_session() -> None:
    machine = build_greeting_machine()
    processor, bus, subscriber = _processor(machine)

    async def scenario():  # noqa: ANN202
        state = await processor.process(machine, twilio_input("CA1", Digits="1"))
        session = await processor.store.get("CA1")
        await _settle(bus)
        return state, session

    state, session = run(scenario())

    assert (state.machine, state.name) == ("ivr", "greeting")
    assert session is not None
    assert (session.machine, session.state_name) == ("ivr", "greeting")
    assert processor.store.call_ids() == ("CA1",)
    assert subscriber.kinds() == [CallEventKind.CALL_STARTED]
    assert subscriber.events[0][1]["state"] is state


def test_second_request_transitions_from_stored_state() -> None:
    machine = build_greeting_machine()
    processor, bus, subscriber = _processor(machine)

    async def scenario():  # noqa: ANN202
        first = await processor.process("ivr", twilio_input("CA1", Digits="1"))
        second = await processor.process("ivr", twilio_input("CA1", Digits="1"))
        await _settle(bus)
        return first, second

    first, second = run(scenario())

    assert first.name == "greeting"
    assert second.name == "english"
    assert subscriber.kinds() == [CallEventKind.CALL_STARTED, CallEventKind.TRANSITIONED]
    payload = subscriber.events[1][1]
    assert payload["from"] == "greeting"
    assert payload["from_machine"] == "ivr"
    assert payload["to"] is second


def test_catch_all_keeps_call_in_state_with_error_option() -> None:
    machine = build_greeting_machine()
    processor, bus, _ = _processor(machine)

    async def scenario():  # noqa: ANN202
        await processor.process(machine, twilio_input("CA1"))
        state = await processor.process(machine, twilio_input("CA1", Digits="9"))
        session = await processor.store.get("CA1")
        await _settle(bus)
        return state, session

    state, session = run(scenario())

    assert state.name == "greeting"
    assert state.options["error"] == "invalid"
    assert session is not None
    assert session.options == {"error": "invalid"}


def test_caller_options_are_merged_over_stored_options() -> None:
    machine = StateMachine("menu", initial_state="a")
    machine.state("a")(lambda call_input, options: "a")
    machine.goto("a", "a", updates={"visits": 2})
    processor, bus, _ = _processor(machine)

    async def scenario():  # noqa: ANN202
        await processor.process(machine, twilio_input("CA1"), {"visits": 1, "tenant": "acme"})
        state = await processor.process(machine, twilio_input("CA1"), {"tenant": "globex"})
        await _settle(bus)
        return state

    state = run(scenario())

    assert dict(state.options) == {"visits": 2, "tenant": "globex"}


def test_unmatched_transition_goes_through_recovery_hook() -> None:
    machine = StateMachine("menu", initial_state="greeting")
    machine.state("greeting")(lambda call_input, options: "greeting")
    machine.state("oops")(lambda call_input, options: "oops")
    machine.goto("greeting", "greeting", input={"Digits": "1"})
    errors: list[BaseException] = []

    @machine.on_transition_error
    def recover(error, state_name, call_input, options):  # noqa: ANN001, ANN202
        errors.append(error)
        return Goto("oops")

    processor, bus, subscriber = _processor(machine)

    async def scenario():  # noqa: ANN202
        await processor.process(machine, twilio_input("CA1"))
        state = await processor.process(machine, twilio_input("CA1", Digits="4"))
        session = await processor.store.get("CA1")
        await _settle(bus)
        return state, session

    state, session = run(scenario())

    assert state.name == "oops"
    assert session is not None and session.state_name == "oops"
    assert len(errors) == 1 and isinstance(errors[0], UndefinedTransitionError)
    assert subscriber.kinds() == [CallEventKind.CALL_STARTED, CallEventKind.TRANSITION_ERROR]
    payload = subscriber.events[1][1]
    assert payload["state_name"] == "greeting"
    assert payload["error"] is errors[0]


def test_fatal_transition_error_leaves_last_good_session() -> None:
    machine = StateMachine("menu", initial_state="greeting")
    machine.state("greeting")(lambda call_input, options: "greeting")
    machine.goto("greeting", "greeting", input={"Digits": "1"}, updates={"seen": True})
    processor, bus, subscriber = _processor(machine)

    async def scenario():  # noqa: ANN202
        await processor.process(machine, twilio_input("CA1"))
        with pytest.raises(FatalTransitionError):
            await processor.process(machine, twilio_input("CA1", Digits="2"))
        session_after_failure = await processor.store.get("CA1")
        recovered = await processor.process(machine, twilio_input("CA1", Digits="1"))
        await _settle(bus)
        return session_after_failure, recovered

    session, recovered = run(scenario())

    assert session is not None
    assert (session.state_name, session.options) == ("greeting", {})
    assert recovered.options["seen"] is True
    assert subscriber.kinds() == [CallEventKind.CALL_STARTED, CallEventKind.TRANSITIONED]


def test_missing_call_id_is_rejected_before_touching_store() -> None:
    machine = build_greeting_machine()
    processor, bus, subscriber = _processor(machine)

    async def scenario() -> None:
        with pytest.raises(InvalidInputError):
            await processor.process(machine, {"CallStatus": "in-progress"})
        with pytest.raises(InvalidInputError):
            await processor.process(machine, {"CallSid": "  ", "CallStatus": "in-progress"})
        await _settle(bus)

    run(scenario())

    assert len(processor.store) == 0
    assert subscriber.events == []


def test_completed_call_runs_hook_once_and_forgets_session() -> None:
    machine = build_greeting_machine()
    completions: list[tuple[str, str, dict]] = []

    @machine.on_complete
    def completed(state, call_input, options):  # noqa: ANN001, ANN202
        completions.append((state.name, call_input["CallStatus"], dict(options)))

    processor, bus, subscriber = _processor(machine)

    async def scenario():  # noqa: ANN202
        await processor.process(machine, twilio_input("CA1"))
        await processor.process(machine, twilio_input("CA1", Digits="1"))
        terminal = await processor.process(machine, twilio_input("CA1", status="completed"))
        after = await processor.store.get("CA1")
        again = await processor.process(machine, twilio_input("CA1", Digits="1"))
        await _settle(bus)
        return terminal, after, again

    terminal, after, again = run(scenario())

    assert terminal.name == "english"
    assert completions == [("english", "completed", {})]
    assert after is None
    assert again.name == "greeting"
    assert subscriber.kinds() == [
        CallEventKind.CALL_STARTED,
        CallEventKind.TRANSITIONED,
        CallEventKind.CALL_COMPLETED,
        CallEventKind.CALL_STARTED,
    ]
    assert subscriber.events[2][1]["terminal_state"] is terminal


def test_completed_status_on_unknown_call_completes_without_storing() -> None:
    machine = build_greeting_machine()
    completions: list[str] = []
    machine.on_complete(lambda state, call_input, options: completions.append(state.name))
    processor, bus, subscriber = _processor(machine)

    async def scenario():  # noqa: ANN202
        state = await processor.process(machine, twilio_input("CA1", status="no-answer"))
        await _settle(bus)
        return state

    state = run(scenario())

    assert state.name == "greeting"
    assert completions == ["greeting"]
    assert len(processor.store) == 0
    assert subscriber.kinds() == [CallEventKind.CALL_STARTED, CallEventKind.CALL_COMPLETED]


def test_async_completion_hook_is_awaited_and_failure_still_deletes_session() -> None:
    machine = build_greeting_machine()

    @machine.on_complete
    async def completed(state, call_input, options):  # noqa: ANN001, ANN202
        await asyncio.sleep(0)
        raise RuntimeError("billing system down")

    processor, bus, subscriber = _processor(machine)

    async def scenario() -> None:
        await processor.process(machine, twilio_input("CA1"))
        with pytest.raises(RuntimeError):
            await processor.process(machine, twilio_input("CA1", status="completed"))
        await _settle(bus)

    run(scenario())

    assert len(processor.store) == 0
    assert CallEventKind.CALL_COMPLETED not in subscriber.kinds()


def test_delegated_machine_drives_later_requests_and_completion() -> None:
    menu = StateMachine("menu", initial_state="greeting")
    menu.state("greeting")(lambda call_input, options: "greeting")
    menu.transition("greeting", input={"Digits": "3"})(
        lambda call_input, options: Delegate("voicemail", updates={"from_menu": True})
    )
    voicemail = StateMachine("voicemail", initial_state="prompt")
    voicemail.state("prompt")(lambda call_input, options: "prompt")
    voicemail.state("saved")(lambda call_input, options: "saved")
    voicemail.goto("prompt", "saved", present=("RecordingUrl",))
    menu_done: list[str] = []
    voicemail_done: list[str] = []
    menu.on_complete(lambda state, call_input, options: menu_done.append(state.name))
    voicemail.on_complete(lambda state, call_input, options: voicemail_done.append(state.name))
    processor, bus, _ = _processor(menu, voicemail)

    async def scenario():  # noqa: ANN202
        await processor.process("menu", twilio_input("CA1"))
        handoff = await processor.process("menu", twilio_input("CA1", Digits="3"))
        saved = await processor.process(
            "menu", twilio_input("CA1", RecordingUrl="https://example.test/rec.wav")
        )
        await processor.process("menu", twilio_input("CA1", status="completed"))
        await _settle(bus)
        return handoff, saved

    handoff, saved = run(scenario())

    assert (handoff.machine, handoff.name) == ("voicemail", "prompt")
    assert (saved.machine, saved.name) == ("voicemail", "saved")
    assert saved.options["from_menu"] is True
    assert voicemail_done == ["saved"]
    assert menu_done == []


def test_concurrent_requests_for_one_call_apply_in_arrival_order() -> None:
    machine = StateMachine("counter", initial_state="count")
    machine.state("count")(lambda call_input, options: f"count={options.get('n', 0)}")
    applied: list[int] = []

    @machine.transition("count")
    def increment(call_input, options):  # noqa: ANN001, ANN202
        applied.append(int(call_input["Seq"]))
        return Goto("count", {"n": options.get("n", 0) + 1, "last": call_input["Seq"]})

    processor, bus, _ = _processor(machine, store=YieldingSessionStore())

    async def scenario():  # noqa: ANN202
        await processor.process(machine, twilio_input("CA1"))
        await asyncio.gather(
            *(processor.process(machine, twilio_input("CA1", Seq=str(seq))) for seq in range(5))
        )
        session = await processor.store.get("CA1")
        await _settle(bus)
        return session

    session = run(scenario())

    assert applied == [0, 1, 2, 3, 4]
    assert session is not None
    assert session.options == {"n": 5, "last": "4"}


def test_concurrent_calls_do_not_block_each_other() -> None:
    machine = build_greeting_machine()
    processor, bus, _ = _processor(machine)

    async def scenario():  # noqa: ANN202
        async with processor.store.lock("CA-busy"):
            state = await asyncio.wait_for(
                processor.process(machine, twilio_input("CA-free")),
                timeout=1,
            )
        await _settle(bus)
        return state

    state = run(scenario())

    assert state.name == "greeting"
    assert processor.store.call_ids() == ("CA-free",)


def test_processor_works_without_event_bus() -> None:
    machine = build_greeting_machine()
    processor = CallProcessor(
        engine=RuleEngine(MachineRegistry([machine]), renderer=RecordingRenderer()),
        store=CallSessionStore(),
    )

    state = run(processor.process(machine, twilio_input("CA1")))

    assert state.name == "greeting"
    assert processor.is_completed_status(" Completed ")
    assert not processor.is_completed_status("ringing")


def test_completion_reports_last_rendered_state_without_resolving_again() -> None:
    machine = StateMachine("survey", initial_state="ask")
    machine.state("ask")(lambda call_input, options: "ask")
    machine.state("answered")(lambda call_input, options: f"answered {call_input['Digits']}")
    machine.goto("ask", "answered", present=("Digits",))
    completions: list[tuple[str, str]] = []
    machine.on_complete(
        lambda state, call_input, options: completions.append((state.name, state.rendered))
    )
    processor, bus, subscriber = _processor(machine)

    async def scenario():  # noqa: ANN202
        await processor.process(machine, twilio_input("CA1"))
        await processor.process(machine, twilio_input("CA1", Digits="5"))
        terminal = await processor.process(machine, twilio_input("CA1", status="completed"))
        await _settle(bus)
        return terminal

    terminal = run(scenario())

    assert terminal.rendered == "<rendered>answered 5</rendered>"
    assert completions == [("answered", "<rendered>answered 5</rendered>")]
    assert len(processor.store) == 0
    assert subscriber.kinds()[-1] is CallEventKind.CALL_COMPLETED


def test_transitioned_event_names_both_ends() -> None:
    machine = build_greeting_machine()
    processor, bus, subscriber = _processor(machine)

    async def scenario() -> None:
        await processor.process(machine, twilio_input("CA1"))
        await processor.process(machine, twilio_input("CA1", Digits="1"))
        await _settle(bus)

    run(scenario())

    payload = subscriber.events[1][1]
    assert (payload["from_machine"], payload["from"]) == ("ivr", "greeting")
    assert (payload["to_machine"], payload["to_state"]) == ("ivr", "english")


def test_unregistered_machine_sharing_a_registered_name_is_rejected() -> None:
    registered = build_greeting_machine("ivr")
    processor, bus, _ = _processor(registered)
    other = StateMachine("ivr", initial_state="other")
    other.state("other")(lambda call_input, options: "other")

    async def scenario() -> None:
        with pytest.raises(ValueError):
            await processor.process(other, twilio_input("CA1"))
        await _settle(bus)

    run(scenario())

    assert len(processor.store) == 0
    assert not other.sealed
