"""Pure engines: question building, session assembly, scheduling and progression reducers."""
