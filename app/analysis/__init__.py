"""Answer analysis: payload parsing, signal extraction and aggregation math.

  payload           ordered answer-text strategies, cited-source extraction
  signal_extractor  LLM analyzer -> sentiment / position / competitors, domain descriptions
  types             DTOs shared with services (signals, sources, SourceType, DomainInfo)
  merge             weighted-merge, visibility and utilization formulas
"""
