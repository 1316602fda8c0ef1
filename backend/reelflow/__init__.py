"""Reelflow - resumable orchestration for multi-stage generative video workflows.

The pipeline turns a script (or a source video that is turned into a script)
into character images, scene images, per-scene video clips and finally a
merged video. All generation work is delegated to asynchronous providers; this
package owns the state machine, job polling, resume and document updates.
"""

__version__ = "0.1.0"
