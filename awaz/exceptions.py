class AwazError(Exception):
    """Base class for errors raised by the voting services."""


class ValidationFailed(AwazError):
    pass


class NotFound(AwazError):
    pass


class ElectionNotFound(NotFound):
    def __init__(self, election_id):
        super().__init__(f"Election {election_id} not found")
        self.election_id = election_id


class CandidateNotFound(NotFound):
    def __init__(self, candidate_id):
        super().__init__(f"Candidate {candidate_id} not found")
        self.candidate_id = candidate_id


class SessionNotFound(NotFound):
    def __init__(self, session_id):
        super().__init__("Voting session not found")
        self.session_id = session_id


class PreconditionFailed(AwazError):
    """The requested transition is not allowed in the current state."""


class SessionExpired(AwazError):
    pass
