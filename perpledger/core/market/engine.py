"""Market facade.

``Market`` orchestrates every entry point over the pure accounting modules:

1. pause and authorization checks (before any state is touched);
2. a reentrancy guard;
3. copy-on-write views over the committed ``MarketState`` to stage changes on;
4. global settlement, then settlement of the accounts involved;
5. the action itself (validated by ``guards.validate_update``);
6. ``invariants.check_all`` on the staged state;
7. collateral transfers through the transfer collaborator;
8. commit, oracle requests and intent nonces, then the buffered events.

Any exception before step 8 leaves the committed state untouched.

Settlement is pull based: global orders are processed in id order as soon as
the oracle has a reading at or after their timestamp, followed by a sync at the
oracle's latest timestamp. An account replays its own pending orders against
the shared, append-only version log when it is next touched. Settled pending
entries are pruned, so a call costs time in the accounts it touches.
"""

from __future__ import annotations

import logging
from bisect import bisect_right
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Callable, Iterator

from . import checkpoint as checkpoint_ledger
from .errors import (
    InvalidIntentError,
    InvalidReferrerError,
    MarketInvariantError,
    NotCoordinatorError,
    NotOwnerError,
    OperatorNotAllowedError,
    PausedError,
    ReentrancyError,
    SignerNotAllowedError,
)
from .guards import UpdateContext, validate_update
from .intents import check_collateralization, match, split_referral, validate_intent
from .interfaces import Oracle, Registry, Transfer, Verifier
from .invariants import check_all
from .liquidation import fund_liquidation_fee, repay_deficit, resolve_shortfall
from .orders import (
    add,
    add_guarantee,
    apply,
    carry_part,
    enqueue,
    is_empty,
    order_from_deltas,
    pending_ids,
    settled_part,
)
from .params import MarketParameter, ProtocolParameter, RiskParameter, validate_market_parameter, validate_risk_parameter
from .state import (
    MarketState,
    current_position,
    global_current_position,
    commit_staged,
    initial_state,
    local_of,
    position_of,
    stage,
    state_to_dict,
)
from .types import (
    AccountPositionProcessed,
    Checkpoint,
    FeeClaimed,
    Global,
    Guarantee,
    Intent,
    Local,
    MarketEvent,
    OracleVersion,
    Order,
    OrderCreated,
    ParameterUpdated,
    Position,
    PositionProcessed,
    Version,
)
from .version import VersionAccumulationContext
from .version import accumulate as accumulate_version

logger = logging.getLogger(__name__)

Listener = Callable[[MarketEvent], None]


@dataclass
class _Call:
    """Working set of one entry point."""
    state: MarketState
    protocol: ProtocolParameter
    latest: OracleVersion
    current_timestamp: int
    events: list[MarketEvent] = field(default_factory=list)
    transfers: list[tuple[str, int]] = field(default_factory=list)
    requests: list[str] = field(default_factory=list)
    intents: list[Intent] = field(default_factory=list)


class Market:
    """A single perpetual market over one oracle feed."""

    def __init__(
        self,
        oracle: Oracle,
        registry: Registry,
        verifier: Verifier,
        transfer: Transfer,
        risk: RiskParameter,
        parameter: MarketParameter,
        *,
        coordinator: str | None = None,
        beneficiary: str | None = None,
        oracle_fee_receiver: str | None = None,
    ) -> None:
        protocol = registry.parameter()
        validate_risk_parameter(risk, protocol)
        validate_market_parameter(parameter, protocol)
        self._oracle = oracle
        self._registry = registry
        self._verifier = verifier
        self._transfer = transfer
        self._oracle_fee_receiver = oracle_fee_receiver
        self._state = initial_state(risk, parameter, coordinator=coordinator, beneficiary=beneficiary)
        self._entered = False
        self._listeners: list[Listener] = []
        self.events: list[MarketEvent] = []

    # -- Readers -------------------------------------------------------------

    @property
    def state(self) -> MarketState:
        """The committed state. Treat as read-only."""
        return self._state

    def snapshot(self) -> dict:
        return state_to_dict(self._state)

    def local(self, account: str) -> Local:
        return local_of(self._state, account)

    def position(self, account: str) -> Position:
        return position_of(self._state, account)

    def current_position(self, account: str) -> Position:
        return current_position(self._state, account)

    def pending_order(self, account: str, order_id: int) -> Order:
        return self._state.local_pending.get(account, {}).get(order_id, Order())

    def global_(self) -> Global:
        return self._state.global_

    def global_position(self) -> Position:
        return self._state.position

    def version(self, timestamp: int) -> Version:
        return self._state.versions.get(timestamp, Version())

    def checkpoint(self, account: str, timestamp: int) -> Checkpoint:
        return self._state.checkpoints.get(account, {}).get(timestamp, Checkpoint())

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    # -- Entry points --------------------------------------------------------

    def update(
        self,
        account: str,
        maker: int = 0,
        long: int = 0,
        short: int = 0,
        collateral: int = 0,
        protect: bool = False,
        referrer: str | None = None,
        *,
        sender: str | None = None,
    ) -> int:
        """Queue a position and/or collateral change for *account*.

        With ``protect=True`` the order is a liquidation submitted by *sender*,
        who need not be an operator of *account*. Returns the local order id
        (0 when nothing was queued).
        """
        sender = account if sender is None else sender
        with self._guard():
            self._require_not_paused()
            auth = self._registry.authorize(account, sender, None, referrer)
            if not protect and not auth.is_operator:
                raise OperatorNotAllowedError(f"{sender} may not operate {account}")

            call = self._begin()
            self._settle(call, account)
            order = order_from_deltas(
                call.current_timestamp,
                maker=maker,
                long=long,
                short=short,
                collateral=collateral,
                protect=protect,
                referral_fee=auth.referral_fee if referrer else 0,
            )
            order_id = self._update(
                call,
                account,
                order,
                Guarantee(),
                liquidator=sender if protect else None,
                referrer=referrer,
            )
            if collateral:
                call.transfers.append((account, collateral))
            self._commit(call)
            return order_id

    def update_intent(self, account: str, intent: Intent, signature: bytes, *, sender: str | None = None) -> int:
        """Fill *intent* with *account* as the counterparty. Returns the counterparty order id."""
        sender = account if sender is None else sender
        signer_account = intent.common.account
        with self._guard():
            self._require_not_paused()
            if not self._registry.authorize(account, sender, None, None).is_operator:
                raise OperatorNotAllowedError(f"{sender} may not operate {account}")
            signer_auth = self._registry.authorize(signer_account, sender, intent.common.signer, intent.originator)
            if not signer_auth.is_signer:
                raise SignerNotAllowedError(f"{intent.common.signer} may not sign for {signer_account}")
            if signer_account == account:
                raise InvalidIntentError("intent filled by its own signer")

            call = self._begin()
            self._settle(call, account)
            self._settle_local(call, signer_account)
            s = call.state
            validate_intent(intent, s.global_.latest_price, call.current_timestamp, s.market)

            counter, signer = match(
                intent,
                account,
                current_position(s, account),
                current_position(s, signer_account),
                call.current_timestamp,
            )
            order_id = self._update(call, counter.account, counter.order, counter.guarantee)
            self._update(
                call,
                signer.account,
                signer.order,
                signer.guarantee,
                originator=intent.originator,
                solver=intent.solver,
            )
            check_collateralization(
                local_of(s, signer_account).collateral, current_position(s, signer_account), intent
            )
            # Last; the nonce is only consumed once the call commits.
            self._verifier.verify_intent(intent, signature)
            call.intents.append(intent)
            self._commit(call)
            return order_id

    def close(self, account: str, protect: bool = False, referrer: str | None = None, *, sender: str | None = None) -> int:
        """Close *account*'s whole current position (a liquidation when *protect*)."""
        current = current_position(self._state, account)
        return self.update(
            account,
            maker=-current.maker,
            long=-current.long,
            short=-current.short,
            protect=protect,
            referrer=referrer,
            sender=sender,
        )

    def settle(self, account: str) -> None:
        with self._guard():
            self._require_not_paused()
            call = self._begin()
            self._settle(call, account)
            self._commit(call)

    def claim_fee(self, receiver: str, *, sender: str) -> int:
        """Pay every fee balance *sender* is entitled to out to *receiver*."""
        with self._guard():
            self._require_not_paused()
            call = self._begin()
            s = call.state
            g = s.global_
            amount = 0
            if sender == self._registry.owner():
                amount += g.protocol_fee
                g = replace(g, protocol_fee=0)
            if sender == self._oracle_fee_receiver:
                amount += g.oracle_fee
                g = replace(g, oracle_fee=0)
            if sender == s.coordinator:
                amount += g.risk_fee
                g = replace(g, risk_fee=0)
            if sender == s.beneficiary:
                amount += g.donation
                g = replace(g, donation=0)
            s.global_ = g
            local = local_of(s, sender)
            if local.claimable:
                amount += local.claimable
                s.locals[sender] = replace(local, claimable=0)
            if amount:
                call.transfers.append((receiver, -amount))
                call.events.append(FeeClaimed(account=sender, receiver=receiver, amount=amount))
                logger.info("fee claimed by %s to %s: %d", sender, receiver, amount)
            self._commit(call)
            return amount

    # -- Admin ---------------------------------------------------------------

    def update_parameter(self, parameter: MarketParameter, *, sender: str) -> None:
        with self._guard():
            self._require_owner(sender)
            call = self._begin()
            validate_market_parameter(parameter, call.protocol)
            call.state.market = parameter
            call.events.append(ParameterUpdated(kind="market", sender=sender))
            logger.info("market parameter updated by %s", sender)
            self._commit(call)

    def update_risk_parameter(self, risk: RiskParameter, *, sender: str) -> None:
        with self._guard():
            if sender not in (self._state.coordinator, self._registry.owner()):
                raise NotCoordinatorError()
            call = self._begin()
            validate_risk_parameter(risk, call.protocol)
            # The elapsed interval accrues under the old parameters.
            self._settle_global(call)
            call.state.risk = risk
            call.events.append(ParameterUpdated(kind="risk", sender=sender))
            logger.info("risk parameter updated by %s", sender)
            self._commit(call)

    def update_coordinator(self, coordinator: str | None, *, sender: str) -> None:
        with self._guard():
            self._require_owner(sender)
            call = self._begin()
            call.state.coordinator = coordinator
            call.events.append(ParameterUpdated(kind="coordinator", sender=sender))
            self._commit(call)

    def update_beneficiary(self, beneficiary: str | None, *, sender: str) -> None:
        with self._guard():
            self._require_owner(sender)
            call = self._begin()
            call.state.beneficiary = beneficiary
            call.events.append(ParameterUpdated(kind="beneficiary", sender=sender))
            self._commit(call)

    # -- Call plumbing -------------------------------------------------------

    @contextmanager
    def _guard(self) -> Iterator[None]:
        if self._entered:
            raise ReentrancyError()
        self._entered = True
        try:
            yield
        finally:
            self._entered = False

    def _require_not_paused(self) -> None:
        if self._registry.paused():
            raise PausedError()

    def _require_owner(self, sender: str) -> None:
        if sender != self._registry.owner():
            raise NotOwnerError()

    def _begin(self) -> _Call:
        latest, current_timestamp = self._oracle.status()
        return _Call(
            state=stage(self._state),
            protocol=self._registry.parameter(),
            latest=latest,
            current_timestamp=current_timestamp,
        )

    def _commit(self, call: _Call) -> None:
        violations = check_all(call.state)
        if violations:
            raise MarketInvariantError(violations)
        for account, amount in call.transfers:
            self._transfer.transfer(account, amount)
        commit_staged(call.state, self._state)
        for account in call.requests:
            self._oracle.request(account)
        for intent in call.intents:
            self._verifier.consume_intent(intent)
        self.events.extend(call.events)
        for event in call.events:
            for listener in self._listeners:
                listener(event)

    # -- Settlement ----------------------------------------------------------

    def _settle(self, call: _Call, account: str) -> None:
        self._settle_global(call)
        self._settle_local(call, account)

    def _settle_global(self, call: _Call) -> None:
        s = call.state
        while s.global_.latest_id < s.global_.current_id:
            order_id = s.global_.latest_id + 1
            order = s.pending[order_id]
            if order.timestamp > call.latest.timestamp:
                break
            self._process_global(call, order_id, order, s.pending_guarantees.get(order_id, Guarantee()))
        if call.latest.timestamp > s.position.timestamp:
            self._process_global(call, s.global_.latest_id, Order(timestamp=call.latest.timestamp), Guarantee())
        for order_id in [i for i in s.pending if i <= s.global_.latest_id]:
            del s.pending[order_id]
            s.pending_guarantees.pop(order_id, None)

    def _process_global(self, call: _Call, order_id: int, order: Order, guarantee: Guarantee) -> None:
        s = call.state
        timestamp = order.timestamp
        if timestamp in s.versions:
            raise MarketInvariantError(["inv_version_immutable"])
        oracle_version, receipt = self._oracle.at(timestamp)
        oracle_version = replace(oracle_version, timestamp=timestamp)

        if oracle_version.valid:
            effective = add(order, s.carry)
            guarantee = add_guarantee(guarantee, s.carry_guarantee)
            s.carry, s.carry_guarantee = Order(), Guarantee()
        else:
            if not is_empty(order):
                s.carry = add(s.carry, carry_part(order))
                s.carry_guarantee = add_guarantee(s.carry_guarantee, guarantee)
            effective, guarantee = settled_part(order), Guarantee()

        version, g, result = accumulate_version(
            s.versions.get(s.position.timestamp, Version()),
            VersionAccumulationContext(
                global_=s.global_,
                from_position=s.position,
                order=effective,
                guarantee=guarantee,
                from_oracle=s.latest_oracle,
                to_oracle=oracle_version,
                receipt=receipt,
                risk=s.risk,
                market=s.market,
                protocol=call.protocol,
            ),
        )
        s.versions[timestamp] = version
        s.version_log.append(timestamp)
        s.position = apply(s.position, effective, timestamp=timestamp)
        if oracle_version.valid:
            s.latest_oracle = oracle_version
        s.global_ = replace(g, latest_id=order_id)
        call.events.append(PositionProcessed(order_id=order_id, timestamp=timestamp, order=effective, result=result))
        logger.debug("global order %d processed at %d (valid=%s)", order_id, timestamp, oracle_version.valid)

    def _settle_local(self, call: _Call, account: str) -> None:
        s = call.state
        pending = s.local_pending.get(account, {})
        guarantees = s.local_guarantees.get(account, {})
        while True:
            local = local_of(s, account)
            if local.latest_id >= local.current_id:
                break
            order_id = local.latest_id + 1
            order = pending[order_id]
            if order.timestamp > s.position.timestamp:
                break
            self._apply_carry(call, account, before=order.timestamp)
            self._process_local(call, account, order_id, order, guarantees.get(order_id, Guarantee()))
        self._apply_carry(call, account, before=s.position.timestamp + 1)
        if s.position.timestamp > position_of(s, account).timestamp:
            self._process_local(
                call, account, local_of(s, account).latest_id, Order(timestamp=s.position.timestamp), Guarantee()
            )
        self._prune_local(s, account)

    @staticmethod
    def _prune_local(s: MarketState, account: str) -> None:
        """Drop settled orders and their attributions, keeping any still carried."""
        pending = s.local_pending.get(account)
        if not pending:
            return
        latest = local_of(s, account).latest_id
        carried = s.local_carry_ids.get(account, ())
        settled = [i for i in pending if i <= latest and i not in carried]
        if not settled:
            return
        for table in (s.local_pending, s.local_guarantees, s.liquidators, s.referrers, s.originators, s.solvers):
            entries = table.get(account)
            if entries:
                for order_id in settled:
                    entries.pop(order_id, None)

    def _apply_carry(self, call: _Call, account: str, before: int) -> None:
        """Settle *account*'s carried deltas at the first valid version preceding *before*."""
        s = call.state
        carry = s.local_carry.get(account)
        if carry is None:
            return
        start = bisect_right(s.version_log, carry.timestamp)
        for timestamp in s.version_log[start:]:
            if timestamp >= before:
                return
            if s.versions[timestamp].valid:
                self._process_local(
                    call, account, local_of(s, account).latest_id, Order(timestamp=timestamp), Guarantee()
                )
                return

    def _process_local(self, call: _Call, account: str, order_id: int, order: Order, guarantee: Guarantee) -> None:
        s = call.state
        timestamp = order.timestamp
        version = s.versions[timestamp]
        position = position_of(s, account)
        local = local_of(s, account)

        carry = s.local_carry.pop(account, None)
        carry_guarantee = s.local_carry_guarantee.pop(account, Guarantee())
        carry_ids = s.local_carry_ids.pop(account, ())
        # Each part of the settling order, with the id its attributions live under.
        sources: list[tuple[int, Order, Guarantee]] = []
        if version.valid:
            effective = order if carry is None else add(order, carry)
            sources.append((order_id, order, guarantee))
            sources.extend(self._carried(s, account, i) for i in carry_ids)
            guarantee = add_guarantee(guarantee, carry_guarantee)
        else:
            if carry is not None or not is_empty(order):
                s.local_carry[account] = add(carry or Order(), carry_part(order))
                s.local_carry_guarantee[account] = add_guarantee(carry_guarantee, guarantee)
                if not is_empty(order) and order_id not in carry_ids:
                    carry_ids += (order_id,)
                s.local_carry_ids[account] = carry_ids
            effective, guarantee = settled_part(order), Guarantee()

        result = checkpoint_ledger.accumulate(
            position, effective, guarantee, s.versions.get(position.timestamp, Version()), version, s.risk
        )
        collateral_before = local.collateral

        g = s.global_
        account_liquidation_fee = 0
        liquidator = None
        if result.liquidation_fee:
            g, account_liquidation_fee = fund_liquidation_fee(g, result.liquidation_fee)
            liquidator = self._attributed(s.liquidators, account, [i for i, part, _ in sources if part.protection])

        delta = (
            result.collateral
            + result.price_override
            - result.trade_fee
            - result.spread
            - result.settlement_fee
            - account_liquidation_fee
        )
        local = replace(local, collateral=local.collateral + delta, latest_id=max(local.latest_id, order_id))
        if effective.protection and version.valid:
            local, g, shortfall = resolve_shortfall(local, g, position.side)
            if shortfall:
                logger.warning("shortfall of %d on %s queued for socialization", shortfall, account)

        s.global_ = g
        s.locals[account] = local
        s.positions[account] = apply(position, effective, timestamp=timestamp)
        s.checkpoints.setdefault(account, {})[timestamp] = checkpoint_ledger.checkpoint_from(
            result, collateral_before, effective
        )

        if result.liquidation_fee:
            self._credit(s, liquidator, result.liquidation_fee)
            logger.info(
                "liquidation of %s settled at %d, fee %d to %s", account, timestamp, result.liquidation_fee, liquidator
            )
        for source_id, part, part_guarantee in sources:
            referral_fee, guarantee_referral_fee = checkpoint_ledger.referral_credits(part, part_guarantee, version)
            self._credit(s, s.referrers.get(account, {}).get(source_id), referral_fee)
            if guarantee_referral_fee:
                solver = s.solvers.get(account, {}).get(source_id)
                originator_share, solver_share = split_referral(guarantee_referral_fee, solver)
                self._credit(s, s.originators.get(account, {}).get(source_id), originator_share)
                self._credit(s, solver, solver_share)

        call.events.append(
            AccountPositionProcessed(account=account, order_id=order_id, timestamp=timestamp, order=effective, result=result)
        )
        logger.debug("account %s order %d processed at %d: delta %d", account, order_id, timestamp, delta)

    @staticmethod
    def _carried(s: MarketState, account: str, order_id: int) -> tuple[int, Order, Guarantee]:
        order = s.local_pending[account][order_id]
        return order_id, carry_part(order), s.local_guarantees.get(account, {}).get(order_id, Guarantee())

    @staticmethod
    def _attributed(table: dict[str, dict[int, str]], account: str, order_ids: list[int]) -> str | None:
        entries = table.get(account, {})
        for order_id in order_ids:
            if order_id in entries:
                return entries[order_id]
        return None

    @staticmethod
    def _credit(s: MarketState, account: str | None, amount: int) -> None:
        """Credit *amount* to *account*'s claimable, or to donation when nobody is owed it."""
        if not amount:
            return
        if account is None:
            s.global_ = replace(s.global_, donation=s.global_.donation + amount)
            return
        local = local_of(s, account)
        s.locals[account] = replace(local, claimable=local.claimable + amount)

    # -- Updates -------------------------------------------------------------

    def _update(
        self,
        call: _Call,
        account: str,
        order: Order,
        guarantee: Guarantee,
        *,
        liquidator: str | None = None,
        referrer: str | None = None,
        originator: str | None = None,
        solver: str | None = None,
    ) -> int:
        s = call.state
        local = local_of(s, account)
        pending = s.local_pending.setdefault(account, {})
        carry = s.local_carry.get(account)
        prior = [pending[i] for i in pending_ids(local)] + ([carry] if carry is not None else [])
        protected_pending = any(o.protection for o in prior)
        had_pending = any(not is_empty(o) for o in prior)

        g = s.global_
        if order.collateral > 0:
            local, g, deposit = repay_deficit(local, g, order.collateral)
            local = replace(local, collateral=local.collateral + deposit)
        else:
            local = replace(local, collateral=local.collateral + order.collateral)

        order_id = 0
        if not is_empty(order) or order.collateral or order.protection:
            local, order_id, merged = enqueue(local, pending, order)
            g, global_id, global_merged = enqueue(g, s.pending, order)
            pending[order_id] = merged
            s.pending[global_id] = global_merged
            if guarantee != Guarantee():
                local_guarantees = s.local_guarantees.setdefault(account, {})
                local_guarantees[order_id] = add_guarantee(local_guarantees.get(order_id, Guarantee()), guarantee)
                s.pending_guarantees[global_id] = add_guarantee(
                    s.pending_guarantees.get(global_id, Guarantee()), guarantee
                )

            if referrer is not None:
                existing = s.referrers.get(account, {}).get(order_id)
                if existing is not None and existing != referrer:
                    raise InvalidReferrerError(f"order {order_id} already referred by {existing}")
                s.referrers.setdefault(account, {})[order_id] = referrer
            if liquidator is not None:
                s.liquidators.setdefault(account, {})[order_id] = liquidator
            if originator is not None:
                s.originators.setdefault(account, {})[order_id] = originator
            if solver is not None:
                s.solvers.setdefault(account, {})[order_id] = solver

        s.locals[account] = local
        s.global_ = g

        validate_update(
            UpdateContext(
                order=order,
                local=local,
                latest=position_of(s, account),
                current=current_position(s, account),
                global_=g,
                global_current=global_current_position(s),
                protected_pending=protected_pending,
                had_pending=had_pending,
                price=g.latest_price,
                latest_timestamp=call.latest.timestamp,
                current_timestamp=call.current_timestamp,
                risk=s.risk,
                market=s.market,
            )
        )

        if order_id:
            if not is_empty(order):
                call.requests.append(account)
            call.events.append(
                OrderCreated(
                    account=account,
                    order_id=order_id,
                    order=order,
                    guarantee=guarantee,
                    liquidator=liquidator,
                    referrer=referrer,
                    originator=originator,
                    solver=solver,
                )
            )
            if liquidator is not None:
                logger.info("liquidation of %s queued by %s as order %d", account, liquidator, order_id)
        return order_id
