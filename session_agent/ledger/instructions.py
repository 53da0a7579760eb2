"""
Instruction builders for the agent program.

Each builder returns an Instruction naming the program method, its arguments
and the accounts it touches. The same instructions are accepted by the
durable ledger and the execution context.
"""
from session_agent.domain.models import ActionCategory, Instruction, PositionSnapshot


def initialize_session(
    owner: str,
    device_key: str,
    ttl_seconds: int,
    max_exposure: int,
    strategy_mask: int,
    session: str,
) -> Instruction:
    return Instruction(
        name="initialize_session",
        args={
            "session_key": device_key,
            "duration_secs": int(ttl_seconds),
            "max_lamports": int(max_exposure),
            "strategy_mask": int(strategy_mask),
        },
        accounts={"owner": owner, "session": session},
    )


def delegate_session(owner: str, payer: str, session: str) -> Instruction:
    return Instruction(
        name="delegate_session",
        args={"owner": owner},
        accounts={"payer": payer, "session": session},
    )


def execute_action(category: ActionCategory, amount: int, device_key: str, session: str) -> Instruction:
    if amount < 0:
        raise ValueError(f"Action amount must be non-negative, got {amount}")
    return Instruction(
        name="execute_action",
        args={"action_type": category.value, "amount_lamports": int(amount)},
        accounts={"session_key": device_key, "session": session},
    )


def commit_session(payer: str, session: str) -> Instruction:
    return Instruction(name="commit_session", accounts={"payer": payer, "session": session})


def undelegate_session(payer: str, session: str) -> Instruction:
    return Instruction(name="undelegate_session", accounts={"payer": payer, "session": session})


def update_status(snapshot: PositionSnapshot, device_key: str, session: str, monitor: str) -> Instruction:
    return Instruction(
        name="update_lp_status",
        args={
            "active_bin": snapshot.market_pointer,
            "fee_x": snapshot.fee_x,
            "fee_y": snapshot.fee_y,
        },
        accounts={"session_key": device_key, "session": session, "monitor": monitor},
    )
