from rpo_sync.worker.runner import main

main()
