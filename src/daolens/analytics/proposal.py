from collections.abc import Sequence
from decimal import Decimal

from daolens import metrics as formulas
from daolens.analytics import Loader
from daolens.cancellation import CancellationToken
from daolens.config import ProposalsConfig
from daolens.enums import CacheCategory
from daolens.enums import ProposalState
from daolens.ledger import GovernanceLedger
from daolens.ledger import ProposalVotes
from daolens.ledger import TokenLedger
from daolens.models import Account
from daolens.models import ProposalAnalytics

SUCCESSFUL_STATES = (ProposalState.succeeded, ProposalState.queued, ProposalState.executed)


class ProposalLoader(Loader):
    """Probe proposal ids from zero until a run of missing ones; there is no proposal count query"""

    category = CacheCategory.proposal

    def __init__(
        self,
        governance: GovernanceLedger,
        token_ledger: TokenLedger,
        config: ProposalsConfig | None = None,
    ) -> None:
        super().__init__()
        self._governance = governance
        self._token_ledger = token_ledger
        self._config = config or ProposalsConfig()

    async def load(self, token: CancellationToken, important: Sequence[Account] = ()) -> ProposalAnalytics:
        state_counts = {state: 0 for state in ProposalState}
        votes: list[ProposalVotes] = []
        found, failures_in_row = 0, 0

        for proposal_id in range(self._config.max_proposal_id):
            if failures_in_row >= self._config.max_consecutive_failures:
                break

            token.raise_if_cancelled()
            try:
                state = await self._governance.proposal_state(proposal_id)
            except Exception as e:
                self._logger.debug('Proposal %s not found: %s', proposal_id, e)
                failures_in_row += 1
                continue

            failures_in_row = 0
            found += 1
            state_counts[state] += 1

            token.raise_if_cancelled()
            try:
                votes.append(await self._governance.proposal_votes(proposal_id))
            except Exception as e:
                self._logger.warning('Failed to get votes for proposal %s: %s', proposal_id, e)

        if not found:
            self._logger.info('No proposals found')

        successful = sum(state_counts[s] for s in SUCCESSFUL_STATES)
        return ProposalAnalytics(
            total_proposals=found,
            state_counts=state_counts,
            success_rate=formulas.success_rate(successful, found, state_counts[ProposalState.canceled]),
            avg_voting_turnout=await self._average_turnout(token, votes),
        )

    async def _average_turnout(self, token: CancellationToken, votes: list[ProposalVotes]) -> Decimal:
        if not votes:
            return formulas.ZERO

        token.raise_if_cancelled()
        try:
            block = await self._token_ledger.current_block()
        except Exception as e:
            self._logger.warning('Failed to get current block, turnout is unknown: %s', e)
            return formulas.ZERO

        token.raise_if_cancelled()
        try:
            total_supply = await self._token_ledger.total_supply(block)
        except Exception as e:
            self._logger.warning('Failed to get total supply, turnout is unknown: %s', e)
            return formulas.ZERO

        if not total_supply:
            return formulas.ZERO
        return formulas.average(formulas.voting_turnout(v.total, total_supply) for v in votes)
