"""DNS-01 challenge provisioning: the provisioner contract, backends and propagation checks."""
from dns01.propagation import PropagationVerifier
from dns01.provisioner import Provisioner, challenge_record_name

__all__ = ["PropagationVerifier", "Provisioner", "challenge_record_name"]
