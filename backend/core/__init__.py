"""
Core backend modules for the narration playback engine.

This package contains the playback core:
- task_sequencer: FIFO single-consumer task chain
- playback_state: Queue, position, skip mask and virtual timeline
- smart_resume: Rewind-on-resume policy
- alignment_tracker: Provider timing -> highlighted location
- playback_orchestrator: State machine driving the active speech provider
"""
