from commonhall_worker.runtime import main

main()
