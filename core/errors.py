class PipelineError(Exception):
    """Base exception for delivery pipeline operations"""
    pass


class CampaignNotFound(PipelineError):
    pass


class InvalidTransition(PipelineError):
    """Requested campaign state change is not allowed from the current state"""

    def __init__(self, campaign_id, current: str, target: str, reason: str = None):
        self.campaign_id = campaign_id
        self.current = current
        self.target = target
        message = f"Campaign {campaign_id} cannot move from {current} to {target}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class ResolutionError(PipelineError):
    """Targeting rule could not be turned into a recipient set"""
    pass


class NoRecipients(ResolutionError):
    pass


class UnresolvableTargeting(ResolutionError):
    pass


class TemplateRenderingError(PipelineError):
    """Content bug: bad template or merge field, never retried"""
    pass
