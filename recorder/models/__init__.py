from .recording import RecordingJob, RecordingParticipant, RecordingStatus
# base and mixins are imported by the above as needed
